"""Subscription lifecycle: applies payment-provider webhook events to entitlements.

Delivery is at-least-once, so every event is

1. authenticated (signature over the raw body, see ``StripeGateway.verify_event``),
2. claimed by event id in the processed-event log (replays of applied events
   are acknowledged without mutation; a failed application releases the
   claim, and a claim left behind by a dead worker expires after its lease),
3. applied with writes that are safe to repeat: checkout credit grants are
   keyed by checkout session id, downgrades are conditional on the stored
   subscription id, and a deleted subscription leaves a marker so its
   checkout arriving late cannot upgrade the user.

Unrecognised event types and events missing required data are acknowledged
and logged, never failed, so they do not trigger redelivery.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from scribe.core.errors import ScribeError
from scribe.metrics import WEBHOOK_EVENTS
from scribe.plans import paid_plan_from_name
from scribe.providers.payments import StripeGateway
from scribe.services.entitlements import EntitlementStore
from scribe.services.ledger import Ledger
from scribe.services.webhook_events import ProcessedEventLog

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNKNOWN = "unknown"


PROVIDER_EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    event_id: str
    provider_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider_event(cls, event: Dict[str, Any]) -> "LifecycleEvent":
        provider_type = str(event.get("type") or "")
        obj = ((event.get("data") or {}).get("object")) or {}
        return cls(
            kind=PROVIDER_EVENT_KINDS.get(provider_type, EventKind.UNKNOWN),
            event_id=str(event.get("id") or ""),
            provider_type=provider_type,
            payload=obj if isinstance(obj, dict) else {},
        )


def checkout_credit_key(session_id: str) -> str:
    return f"checkout:{session_id}"


class SubscriptionLifecycleHandler:
    def __init__(
        self,
        store: EntitlementStore,
        ledger: Ledger,
        events: ProcessedEventLog,
        gateway: StripeGateway,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.events = events
        self.gateway = gateway
        self._handlers: Dict[EventKind, Callable[[LifecycleEvent], str]] = {
            EventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            EventKind.SUBSCRIPTION_CREATED: self._on_subscription_created,
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    def handle_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        event = self.gateway.verify_event(payload, sig_header)
        return self.process(LifecycleEvent.from_provider_event(event))

    def process(self, event: LifecycleEvent) -> Dict[str, Any]:
        if not self.events.claim(event.event_id, event.provider_type):
            logger.info("Skipping already processed event %s (%s)", event.event_id, event.provider_type)
            WEBHOOK_EVENTS.labels(event_type=event.provider_type, outcome="deduped").inc()
            return {"received": True, "deduped": True}

        try:
            outcome = self.apply(event)
        except Exception:
            logger.exception("Failed to apply event %s (%s); releasing for redelivery", event.event_id, event.provider_type)
            WEBHOOK_EVENTS.labels(event_type=event.provider_type, outcome="failed").inc()
            try:
                self.events.release(event.event_id)
            except ScribeError as release_exc:
                logger.error("Could not release event %s: %s", event.event_id, release_exc)
            raise

        try:
            self.events.complete(event.event_id)
        except ScribeError as exc:
            # claim stays processing; a redelivery after the lease re-applies, which is idempotent
            logger.error("Could not mark event %s done: %s", event.event_id, exc)

        WEBHOOK_EVENTS.labels(event_type=event.provider_type, outcome=outcome).inc()
        return {"received": True, "outcome": outcome}

    def apply(self, event: LifecycleEvent) -> str:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("Unhandled event type: %s", event.provider_type)
            return "ignored"
        return handler(event)

    def _on_checkout_completed(self, event: LifecycleEvent) -> str:
        session = event.payload
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_name = metadata.get("planName")
        if not user_id or not plan_name:
            logger.error("Missing metadata in checkout session %s", session.get("id"))
            return "dropped"

        plan = paid_plan_from_name(plan_name)
        if plan is None:
            logger.error("Invalid plan name %r in checkout session %s", plan_name, session.get("id"))
            return "dropped"

        profile = self.store.get(user_id)
        if profile is None:
            logger.error("User not found for checkout session %s: %s", session.get("id"), user_id)
            return "dropped"

        credit_key = checkout_credit_key(session.get("id") or event.event_id)
        if credit_key in profile.applied_credit_keys:
            logger.info("Checkout %s already applied to %s", credit_key, user_id)
            return "already_applied"

        subscription_id = session.get("subscription")
        if subscription_id and self.events.subscription_ended(subscription_id):
            # deletion was delivered first; the paid period is credited but the plan stays as is
            logger.warning(
                "Subscription %s ended before its checkout %s was applied; not upgrading %s",
                subscription_id, session.get("id"), user_id,
            )
            self.ledger.credit(user_id, plan.credit_allotment, idempotency_key=credit_key, reason="checkout")
            return "subscription_ended"

        # plan first, credits last: the credit key marks the checkout as fully applied
        self.store.apply_plan(
            user_id,
            plan,
            customer_id=session.get("customer"),
            subscription_id=subscription_id,
        )
        granted = self.ledger.credit(user_id, plan.credit_allotment, idempotency_key=credit_key, reason="checkout")
        if not granted:
            return "already_applied"

        logger.info(
            "User %s upgraded to %s plan and received %d credits",
            user_id, plan.display_name, plan.credit_allotment,
        )
        return "applied"

    def _on_subscription_created(self, event: LifecycleEvent) -> str:
        logger.info("Subscription created: %s", event.payload.get("id"))
        return "acknowledged"

    def _on_subscription_updated(self, event: LifecycleEvent) -> str:
        # TODO: prorate credits when a subscription changes price mid-period
        sub = event.payload
        logger.info(
            "Subscription updated: %s status=%s cancel_at_period_end=%s",
            sub.get("id"), sub.get("status"), sub.get("cancel_at_period_end"),
        )
        return "acknowledged"

    def _on_subscription_deleted(self, event: LifecycleEvent) -> str:
        subscription_id = event.payload.get("id")
        if not subscription_id:
            logger.error("Subscription deleted event %s has no subscription id", event.event_id)
            return "dropped"

        # a checkout for this subscription may still be in flight
        self.events.record_subscription_ended(subscription_id)

        profile = self.store.find_by_subscription(subscription_id)
        if profile is None:
            logger.info("No user found with subscription ID: %s", subscription_id)
            return "dropped"

        if not self.store.revert_to_free(profile.user_id, subscription_id=subscription_id):
            logger.info("Subscription %s no longer current for %s; not downgrading", subscription_id, profile.user_id)
            return "dropped"

        logger.info("User %s downgraded to free plan after subscription deletion", profile.user_id)
        return "applied"
