from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Request

from scribe.core.settings import S, Settings
from scribe.providers.payments import StripeGateway
from scribe.providers.transcription import DeepgramTranscriber
from scribe.services.entitlements import EntitlementStore
from scribe.services.ledger import Ledger
from scribe.services.lifecycle import SubscriptionLifecycleHandler
from scribe.services.orchestrator import TranscriptionOrchestrator
from scribe.services.rate_limit import FixedWindowRateLimiter
from scribe.services.webhook_events import ProcessedEventLog


@dataclass
class Services:
    store: EntitlementStore
    ledger: Ledger
    gateway: StripeGateway
    lifecycle: SubscriptionLifecycleHandler
    orchestrator: TranscriptionOrchestrator
    transcribe_limiter: FixedWindowRateLimiter


def build_services(
    settings: Settings = S,
    *,
    tables: Optional[Any] = None,
    transcriber: Optional[Any] = None,
    gateway: Optional[StripeGateway] = None,
) -> Services:
    if tables is None:
        from scribe.core.tables import T as tables

    store = EntitlementStore(
        tables.entitlements,
        subscription_index=settings.entitlements_subscription_index,
        signup_bonus=settings.signup_bonus_credits,
    )
    ledger = Ledger(store, max_attempts=settings.ledger_max_attempts)
    gateway = gateway or StripeGateway(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    transcriber = transcriber or DeepgramTranscriber(
        settings.deepgram_api_key,
        base_url=settings.deepgram_base_url,
        model=settings.deepgram_model,
        language=settings.deepgram_language,
        timeout_seconds=settings.transcription_timeout_seconds,
    )
    events = ProcessedEventLog(
        tables.webhook_events,
        ttl_seconds=settings.webhook_event_ttl_seconds,
        lease_seconds=settings.webhook_claim_lease_seconds,
    )
    return Services(
        store=store,
        ledger=ledger,
        gateway=gateway,
        lifecycle=SubscriptionLifecycleHandler(store, ledger, events, gateway),
        orchestrator=TranscriptionOrchestrator(
            store, ledger, transcriber, recheck_after_seconds=settings.recheck_after_seconds
        ),
        transcribe_limiter=FixedWindowRateLimiter(
            tables.rate_limits,
            scope="transcribe",
            max_requests=settings.transcribe_rate_limit_max,
            window_seconds=settings.transcribe_rate_limit_window_seconds,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
