from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from scribe.core.errors import ScribeError, TranscriptionFailed, Unauthenticated
from scribe.metrics import BILLING_ANOMALIES, TRANSCRIPTION_LATENCY, TRANSCRIPTIONS
from scribe.providers.transcription import TranscriptResult
from scribe.services.entitlements import EntitlementStore
from scribe.services.ledger import DebitResult, Ledger
from scribe.services.policy import Decision, evaluate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptOutcome:
    decision: Decision
    result: Optional[TranscriptResult] = None
    debit: Optional[DebitResult] = None
    billing_error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.result is not None

    def as_dict(self, *, file_name: str = "", file_size: int = 0, mime_type: str = "") -> Dict[str, Any]:
        if self.result is None:
            return {"error": self.decision.message, **self.decision.as_dict()}
        r = self.result
        return {
            "transcript": r.transcript,
            "confidence": r.confidence,
            "duration": r.duration_seconds,
            "words": [w.as_dict() for w in r.words],
            "metadata": {
                "fileName": file_name,
                "fileSize": file_size,
                "mimeType": mime_type,
                "model": r.model,
                "language": r.language,
            },
            "credits": {
                "charged": self.debit.debited if self.debit else 0,
                "required": self.decision.credits_required,
                "remaining": self.debit.balance_after if self.debit else None,
            },
            "billing": {"status": "debit_failed" if self.billing_error else "ok"},
        }


class TranscriptionOrchestrator:
    """Admission check, provider call, then debit on success only."""

    def __init__(
        self,
        store: EntitlementStore,
        ledger: Ledger,
        transcriber: Any,
        *,
        recheck_after_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.transcriber = transcriber
        self.recheck_after_seconds = recheck_after_seconds
        self.clock = clock

    def check(self, user_id: str, estimated_minutes: float) -> Decision:
        profile = self.store.get(user_id)
        if profile is None:
            raise Unauthenticated()
        return evaluate(profile, estimated_minutes)

    def submit(
        self,
        user_id: str,
        audio: bytes,
        estimated_minutes: float,
        *,
        mime_type: Optional[str] = None,
    ) -> TranscriptOutcome:
        decision = self.check(user_id, estimated_minutes)
        if not decision.admitted:
            TRANSCRIPTIONS.labels(outcome="denied").inc()
            logger.info("Denied transcription for %s: %s", user_id, decision.reason.value if decision.reason else "")
            return TranscriptOutcome(decision=decision)

        started = self.clock()
        try:
            result = self.transcriber.transcribe(audio, mime_type=mime_type)
        except Exception as exc:
            TRANSCRIPTIONS.labels(outcome="failed").inc()
            logger.error("Transcription failed for %s: %s", user_id, exc)
            raise TranscriptionFailed() from exc
        elapsed = self.clock() - started
        TRANSCRIPTION_LATENCY.observe(elapsed)

        if elapsed >= self.recheck_after_seconds:
            self._recheck(user_id, estimated_minutes)

        # the transcript is already produced; billing faults must not withhold it
        try:
            debit = self.ledger.debit(user_id, decision.credits_required)
        except ScribeError as exc:
            BILLING_ANOMALIES.labels(kind="debit_failed").inc()
            logger.error(
                "Debit of %d credits failed for %s after successful transcription; needs reconciliation: %s",
                decision.credits_required, user_id, exc,
            )
            TRANSCRIPTIONS.labels(outcome="completed").inc()
            return TranscriptOutcome(decision=decision, result=result, billing_error=exc.code)

        TRANSCRIPTIONS.labels(outcome="completed").inc()
        return TranscriptOutcome(decision=decision, result=result, debit=debit)

    def _recheck(self, user_id: str, estimated_minutes: float) -> None:
        try:
            fresh = self.check(user_id, estimated_minutes)
        except ScribeError as exc:
            logger.warning("Re-check before debit failed for %s: %s", user_id, exc)
            return
        if not fresh.admitted:
            # concurrent requests spent the balance meanwhile; debit still runs, clamped at zero
            logger.warning(
                "Over-admission for %s: %s (balance now %d)",
                user_id, fresh.reason.value if fresh.reason else "", fresh.remaining,
            )
