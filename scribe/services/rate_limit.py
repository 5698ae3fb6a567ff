from __future__ import annotations

import logging
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException

from scribe.core.ddb import is_conditional_failure
from scribe.core.time import now_ts
from scribe.metrics import RATE_LIMITED

logger = logging.getLogger(__name__)


class FixedWindowRateLimiter:
    """Fixed-window request counter shared across instances via DynamoDB."""

    def __init__(
        self,
        table: Any,
        *,
        scope: str,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.table = table
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

    def hit(self, client_key: str) -> bool:
        now = self.clock()
        window = now // self.window_seconds
        key = {"rate_key": f"rl#{self.scope}#{client_key}"}
        ttl = (window + 1) * self.window_seconds + 3600

        try:
            # New window -> reset to 1
            try:
                self.table.update_item(
                    Key=key,
                    UpdateExpression="SET window_start = :w, request_count = :one, ttl_epoch = :ttl",
                    ConditionExpression="attribute_not_exists(window_start) OR window_start <> :w",
                    ExpressionAttributeValues={":w": window, ":one": 1, ":ttl": ttl},
                )
                return True
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise

            # Same window -> increment while under the limit
            try:
                self.table.update_item(
                    Key=key,
                    UpdateExpression="ADD request_count :one",
                    ConditionExpression="window_start = :w AND request_count < :limit",
                    ExpressionAttributeValues={":w": window, ":one": 1, ":limit": self.max_requests},
                )
                return True
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise
                return False
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Rate limit store unavailable for %s; allowing request: %s", self.scope, exc)
            return True


def rate_limit_or_429(limiter: FixedWindowRateLimiter, client_key: str) -> None:
    if not limiter.hit(client_key):
        RATE_LIMITED.labels(scope=limiter.scope).inc()
        raise HTTPException(429, {"error": "Too many requests", "code": "rate_limited"})
