from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple


def _csv(value: str) -> Tuple[str, ...]:
    return tuple(v.strip().lower() for v in value.split(",") if v.strip())


DEFAULT_AUDIO_TYPES = ",".join([
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/mp4",
    "audio/m4a",
    "audio/x-m4a",
    "audio/aac",
    "audio/flac",
    "audio/x-flac",
    "audio/ogg",
    "audio/webm",
])


@dataclass(frozen=True)
class Settings:
    app_name: str = os.environ.get("APP_NAME", "Scribe API")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")
    cors_allow_origins: Tuple[str, ...] = field(
        default_factory=lambda: tuple(o.strip() for o in os.environ.get("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip())
    )

    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    ddb_endpoint_url: str = os.environ.get("DDB_ENDPOINT_URL", "")

    # DynamoDB tables
    entitlements_table_name: str = os.environ.get("ENTITLEMENTS_TABLE_NAME", "entitlements")
    entitlements_subscription_index: str = os.environ.get(
        "ENTITLEMENTS_SUBSCRIPTION_INDEX", "stripe_subscription_id-index"
    )
    webhook_events_table_name: str = os.environ.get("WEBHOOK_EVENTS_TABLE_NAME", "webhook_events")
    rate_limits_table_name: str = os.environ.get("RATE_LIMITS_TABLE_NAME", "rate_limits")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    webhook_event_ttl_seconds: int = int(os.environ.get("WEBHOOK_EVENT_TTL_SECONDS", str(7 * 24 * 3600)))
    webhook_claim_lease_seconds: int = int(os.environ.get("WEBHOOK_CLAIM_LEASE_SECONDS", "300"))

    # Firebase auth (optional wiring; dev fallback when unset)
    firebase_project_id: str = os.environ.get("FIREBASE_PROJECT_ID", "")
    firebase_jwks_url: str = os.environ.get(
        "FIREBASE_JWKS_URL",
        "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
    )

    # Credits
    signup_bonus_credits: int = int(os.environ.get("SIGNUP_BONUS_CREDITS", "5"))
    ledger_max_attempts: int = int(os.environ.get("LEDGER_MAX_ATTEMPTS", "5"))
    recheck_after_seconds: float = float(os.environ.get("RECHECK_AFTER_SECONDS", "5"))

    # Deepgram
    deepgram_api_key: str = os.environ.get("DEEPGRAM_API_KEY", "")
    deepgram_base_url: str = os.environ.get("DEEPGRAM_BASE_URL", "https://api.deepgram.com/v1/listen")
    deepgram_model: str = os.environ.get("DEEPGRAM_MODEL", "nova-2")
    deepgram_language: str = os.environ.get("DEEPGRAM_LANGUAGE", "en-US")
    transcription_timeout_seconds: float = float(os.environ.get("TRANSCRIPTION_TIMEOUT_SECONDS", "60"))

    # Uploads
    max_upload_bytes: int = int(os.environ.get("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))
    allowed_audio_types: Tuple[str, ...] = field(
        default_factory=lambda: _csv(os.environ.get("ALLOWED_AUDIO_TYPES", DEFAULT_AUDIO_TYPES))
    )

    # Rate limiting
    transcribe_rate_limit_max: int = int(os.environ.get("TRANSCRIBE_RATE_LIMIT_MAX", "10"))
    transcribe_rate_limit_window_seconds: int = int(os.environ.get("TRANSCRIBE_RATE_LIMIT_WINDOW_SECONDS", "60"))

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    public_base_url: str = os.environ.get("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")
    stripe_success_url: str = os.environ.get("STRIPE_SUCCESS_URL", "")
    stripe_cancel_url: str = os.environ.get("STRIPE_CANCEL_URL", "")

    @property
    def checkout_success_url(self) -> str:
        return self.stripe_success_url or f"{self.public_base_url}/app?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return self.stripe_cancel_url or f"{self.public_base_url}/pricing?canceled=true"


S = Settings()
