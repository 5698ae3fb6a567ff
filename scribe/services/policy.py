"""Admission and pricing rules for transcription requests.

Pure functions over an entitlement snapshot; nothing here touches the store.
The orchestrator calls ``evaluate`` before the provider call and again before
debiting when the call took long.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from scribe.core.errors import InvalidDuration
from scribe.services.entitlements import UserEntitlement


class DenialReason(str, Enum):
    DURATION_EXCEEDS_PLAN = "duration_exceeds_plan"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class Decision:
    admitted: bool
    credits_required: int
    remaining: int
    message: str
    reason: Optional[DenialReason] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "canUse": self.admitted,
            "code": self.reason.value if self.reason else None,
            "creditsRequired": self.credits_required,
            "remaining": self.remaining,
            "message": self.message,
        }


def validate_duration(duration_minutes: Any) -> float:
    try:
        value = float(duration_minutes)
    except (TypeError, ValueError) as exc:
        raise InvalidDuration() from exc
    if not math.isfinite(value) or value <= 0:
        raise InvalidDuration()
    return value


def credits_required(duration_minutes: float) -> int:
    # one credit per started minute
    return int(math.ceil(validate_duration(duration_minutes)))


def evaluate(profile: UserEntitlement, duration_minutes: float) -> Decision:
    duration = validate_duration(duration_minutes)
    cost = credits_required(duration)
    balance = profile.credit_balance

    if duration > profile.max_file_duration_minutes:
        return Decision(
            admitted=False,
            credits_required=cost,
            remaining=balance,
            reason=DenialReason.DURATION_EXCEEDS_PLAN,
            message=(
                f"File duration ({duration:.1f} minutes) exceeds your plan limit "
                f"({profile.max_file_duration_minutes} minutes). Please upgrade your plan."
            ),
        )

    if balance < cost:
        return Decision(
            admitted=False,
            credits_required=cost,
            remaining=balance,
            reason=DenialReason.INSUFFICIENT_CREDITS,
            message=(
                f"Insufficient credits. You need {cost} credits but have {balance}. "
                "Please purchase more credits."
            ),
        )

    return Decision(
        admitted=True,
        credits_required=cost,
        remaining=balance,
        message=f"You have {balance} credits remaining. This transcription will cost {cost} credits.",
    )
