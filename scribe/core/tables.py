from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    entitlements: Any
    webhook_events: Any
    rate_limits: Any

T = Tables(
    entitlements=ddb.Table(S.entitlements_table_name),
    webhook_events=ddb.Table(S.webhook_events_table_name),
    rate_limits=ddb.Table(S.rate_limits_table_name),
)
