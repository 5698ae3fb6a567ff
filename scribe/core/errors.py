"""Error taxonomy shared by the services and the HTTP layer.

Every error carries a stable machine-readable ``code`` and a human-readable
message. Routers let these propagate; the handler registered in
``scribe.main`` renders them as ``{"error": message, "code": code}``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ScribeError(Exception):
    code = "internal_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class InvalidRequest(ScribeError):
    code = "invalid_request"
    status_code = 400
    default_message = "Missing required parameters"


class InvalidDuration(InvalidRequest):
    code = "invalid_duration"
    default_message = "Duration must be a positive, finite number of minutes"


class InvalidSignature(ScribeError):
    code = "invalid_signature"
    status_code = 400
    default_message = "Invalid signature"


class Unauthenticated(ScribeError):
    code = "unauthenticated"
    status_code = 401
    default_message = "No profile found for this user"


class EntitlementNotFound(ScribeError):
    code = "entitlement_not_found"
    status_code = 404
    default_message = "User not found"


class EventInProgress(ScribeError):
    code = "event_in_progress"
    status_code = 409
    default_message = "Event is already being processed"


class PaymentsNotConfigured(ScribeError):
    code = "payments_not_configured"
    status_code = 501
    default_message = "Stripe is not properly configured"


class PaymentProviderError(ScribeError):
    code = "payment_provider_error"
    status_code = 502
    default_message = "Payment provider request failed"


class TranscriptionFailed(ScribeError):
    code = "transcription_failed"
    status_code = 502
    default_message = "Transcription failed"


class StoreUnavailable(ScribeError):
    code = "store_unavailable"
    status_code = 503
    default_message = "Entitlement store unavailable"
