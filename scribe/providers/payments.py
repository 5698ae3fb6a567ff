from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from scribe.core.errors import InvalidRequest, InvalidSignature, PaymentProviderError, PaymentsNotConfigured

logger = logging.getLogger(__name__)


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StripeGateway:
    """Stripe calls used by the billing routes and the webhook handler.

    The API key is passed per request instead of through the ``stripe.api_key``
    global, so one process can hold differently configured gateways.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        success_url: str,
        cancel_url: str,
        webhook_tolerance_seconds: int = 300,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.webhook_tolerance_seconds = webhook_tolerance_seconds

    def ensure_configured(self) -> None:
        if not self.secret_key:
            raise PaymentsNotConfigured("Stripe is not properly configured. Please check your environment variables.")

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise PaymentsNotConfigured("Stripe webhook secret not configured")
        if not sig_header:
            raise InvalidSignature("No signature found")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidRequest("Webhook body is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                text, sig_header, self.webhook_secret, self.webhook_tolerance_seconds
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise InvalidSignature() from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise InvalidRequest("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidRequest("Webhook body is not a provider event")
        return event

    def create_checkout_session(
        self,
        *,
        price_id: str,
        plan_name: str,
        user_id: str,
        user_email: Optional[str] = None,
    ) -> Dict[str, str]:
        self.ensure_configured()

        try:
            price = stripe.Price.retrieve(price_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.warning("Error retrieving price %s: %s", price_id, exc)
            raise InvalidRequest("Invalid price ID or price not found") from exc
        if _get(price, "type") != "recurring":
            raise InvalidRequest("Price is not configured for recurring billing")

        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription",
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": user_id,
            "metadata": {"userId": user_id, "planName": plan_name},
            "billing_address_collection": "auto",
            "allow_promotion_codes": True,
        }
        if user_email:
            params["customer_email"] = user_email

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            logger.error("Error creating checkout session for %s: %s", user_id, exc)
            raise PaymentProviderError(f"Failed to create checkout session: {exc}") from exc
        return {"id": _get(session, "id"), "url": _get(session, "url")}

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        self.ensure_configured()
        try:
            sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.error("Error cancelling subscription %s: %s", subscription_id, exc)
            raise PaymentProviderError(f"Failed to cancel subscription: {exc}") from exc
        return {
            "id": _get(sub, "id"),
            "status": _get(sub, "status"),
            "cancel_at_period_end": bool(_get(sub, "cancel_at_period_end", True)),
        }
