from __future__ import annotations

import logging
from typing import Any, Callable

from botocore.exceptions import ClientError

from scribe.core.ddb import is_conditional_failure, store_errors, with_ttl
from scribe.core.errors import EventInProgress
from scribe.core.time import now_ts

logger = logging.getLogger(__name__)

PROCESSING = "processing"
DONE = "done"


class ProcessedEventLog:
    """Remembers provider event ids so redelivered webhooks are applied once.

    A claim starts as ``processing`` and becomes ``done`` after the event is
    applied. Only ``done`` entries dedupe; a ``processing`` entry whose lease
    ran out belongs to a worker that died and is taken over.
    """

    def __init__(
        self,
        table: Any,
        *,
        ttl_seconds: int,
        lease_seconds: int = 300,
        source: str = "stripe",
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.table = table
        self.ttl_seconds = ttl_seconds
        self.lease_seconds = lease_seconds
        self.source = source
        self.clock = clock

    def _key(self, event_id: str) -> str:
        return f"{self.source}#{event_id}"

    def _ended_key(self, subscription_id: str) -> str:
        return f"{self.source}#deleted_sub#{subscription_id}"

    def claim(self, event_id: str, event_type: str = "") -> bool:
        """True when this caller now owns the event, False when it was already applied.

        Raises EventInProgress while another worker holds a live claim.
        """
        ts = self.clock()
        try:
            with store_errors("put_item"):
                self.table.put_item(
                    Item=with_ttl(
                        {
                            "event_id": self._key(event_id),
                            "event_type": event_type,
                            "status": PROCESSING,
                            "claimed_at": ts,
                            "ts": ts,
                        },
                        ttl_epoch=ts + self.ttl_seconds,
                    ),
                    ConditionExpression="attribute_not_exists(event_id) OR (#s = :processing AND claimed_at < :stale)",
                    ExpressionAttributeNames={"#s": "status"},
                    ExpressionAttributeValues={":processing": PROCESSING, ":stale": ts - self.lease_seconds},
                )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            with store_errors("get_item"):
                item = self.table.get_item(Key={"event_id": self._key(event_id)}, ConsistentRead=True).get("Item") or {}
            if item.get("status") == PROCESSING:
                raise EventInProgress(f"Event {event_id} is being processed by another worker")
            return False
        return True

    def complete(self, event_id: str) -> None:
        with store_errors("update_item"):
            self.table.update_item(
                Key={"event_id": self._key(event_id)},
                UpdateExpression="SET #s = :done, completed_at = :t",
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues={":done": DONE, ":t": self.clock()},
            )

    def release(self, event_id: str) -> None:
        with store_errors("delete_item"):
            self.table.delete_item(Key={"event_id": self._key(event_id)})

    def record_subscription_ended(self, subscription_id: str) -> None:
        ts = self.clock()
        with store_errors("put_item"):
            self.table.put_item(
                Item=with_ttl(
                    {"event_id": self._ended_key(subscription_id), "subscription_id": subscription_id, "ts": ts},
                    ttl_epoch=ts + self.ttl_seconds,
                )
            )

    def subscription_ended(self, subscription_id: str) -> bool:
        with store_errors("get_item"):
            resp = self.table.get_item(Key={"event_id": self._ended_key(subscription_id)}, ConsistentRead=True)
        return "Item" in resp
