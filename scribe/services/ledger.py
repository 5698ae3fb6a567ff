from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from scribe.core.errors import EntitlementNotFound, InvalidRequest, StoreUnavailable
from scribe.metrics import CREDITS_DEBITED, CREDITS_GRANTED
from scribe.services.entitlements import EntitlementStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DebitResult:
    user_id: str
    requested: int
    debited: int
    balance_before: int
    balance_after: int


class Ledger:
    """Applies credit debits and grants against the entitlement store.

    Debits are a compare-and-set on ``credit_balance`` retried on contention,
    and are floor-clamped at zero.
    """

    def __init__(self, store: EntitlementStore, *, max_attempts: int = 5) -> None:
        self.store = store
        self.max_attempts = max(1, int(max_attempts))

    def debit(self, user_id: str, credits_required: int) -> DebitResult:
        if int(credits_required) < 0:
            raise InvalidRequest("credits_required must be >= 0")
        credits_required = int(credits_required)

        for attempt in range(1, self.max_attempts + 1):
            current = self.store.get(user_id)
            if current is None:
                raise EntitlementNotFound()
            before = current.credit_balance
            after = max(0, before - credits_required)
            if self.store.compare_and_set_balance(user_id, before, after):
                debited = before - after
                if debited < credits_required:
                    logger.warning(
                        "Debit for %s clamped at zero: requested=%d available=%d",
                        user_id, credits_required, before,
                    )
                CREDITS_DEBITED.inc(debited)
                return DebitResult(user_id, credits_required, debited, before, after)
            logger.info("Balance for %s changed during debit (attempt %d/%d)", user_id, attempt, self.max_attempts)

        raise StoreUnavailable(f"Could not apply debit for {user_id} after {self.max_attempts} attempts")

    def credit(self, user_id: str, amount: int, *, idempotency_key: Optional[str] = None, reason: str = "grant") -> bool:
        """Add ``amount`` credits. Returns False when ``idempotency_key`` was already applied."""
        if int(amount) < 0:
            raise InvalidRequest("amount must be >= 0")
        if self.store.get(user_id) is None:
            raise EntitlementNotFound()

        applied = self.store.add_credits(user_id, int(amount), idempotency_key=idempotency_key)
        if applied:
            CREDITS_GRANTED.labels(reason=reason).inc(int(amount))
            logger.info("Granted %d credits to %s (%s)", int(amount), user_id, reason)
        else:
            logger.info("Credit grant %s for %s already applied; skipping", idempotency_key, user_id)
        return applied
