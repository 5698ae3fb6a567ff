from __future__ import annotations

import math
from typing import Dict, Optional

from scribe.core.errors import InvalidDuration
from scribe.core.normalize import normalize_mime

# Typical encoded sizes; only used when the client could not read the duration.
BYTES_PER_MINUTE: Dict[str, int] = {
    "audio/mpeg": 960_000,       # 128 kbps
    "audio/mp3": 960_000,
    "audio/mp4": 960_000,
    "audio/m4a": 960_000,
    "audio/x-m4a": 960_000,
    "audio/aac": 960_000,
    "audio/ogg": 720_000,        # 96 kbps
    "audio/webm": 720_000,
    "audio/flac": 5_040_000,
    "audio/x-flac": 5_040_000,
    "audio/wav": 10_584_000,     # 44.1 kHz, 16-bit stereo PCM
    "audio/x-wav": 10_584_000,
    "audio/wave": 10_584_000,
}
DEFAULT_BYTES_PER_MINUTE = 1_000_000


def size_based_estimate(size_bytes: int, mime_type: Optional[str]) -> float:
    if size_bytes <= 0:
        raise InvalidDuration("Cannot estimate the duration of an empty file")
    rate = BYTES_PER_MINUTE.get(normalize_mime(mime_type), DEFAULT_BYTES_PER_MINUTE)
    return size_bytes / rate


def estimate_duration_minutes(reported_minutes: Optional[float], size_bytes: int, mime_type: Optional[str]) -> float:
    """Pre-flight duration used for admission.

    The client-reported value wins when present and finite; a finite value
    that is not positive is rejected. A missing or non-finite report falls
    back to the size heuristic. The provider's duration after transcription
    is for display only and is never re-billed.
    """
    if reported_minutes is not None:
        try:
            value = float(reported_minutes)
        except (TypeError, ValueError) as exc:
            raise InvalidDuration() from exc
        if math.isfinite(value):
            if value <= 0:
                raise InvalidDuration()
            return value
    return size_based_estimate(size_bytes, mime_type)
