"""Process-wide logging setup."""
from __future__ import annotations

import logging
import sys

from .settings import S

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(level or S.log_level)
    if not any(getattr(h, "_scribe", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._scribe = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # botocore logs every retry at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
