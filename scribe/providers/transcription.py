from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class TranscriptionProviderError(Exception):
    pass


@dataclass(frozen=True)
class Word:
    word: str
    start: float
    end: float
    confidence: float

    def as_dict(self) -> Dict[str, Any]:
        return {"word": self.word, "start": self.start, "end": self.end, "confidence": self.confidence}


@dataclass(frozen=True)
class TranscriptResult:
    transcript: str
    confidence: float
    duration_seconds: float
    words: List[Word] = field(default_factory=list)
    model: str = ""
    language: str = ""


def _last_end(entries: List[Dict[str, Any]]) -> float:
    if not entries:
        return 0.0
    try:
        return float(entries[-1].get("end") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def parse_listen_response(body: Dict[str, Any], *, model: str = "", language: str = "") -> TranscriptResult:
    results = body.get("results") or {}
    channels = results.get("channels") or []
    alternatives = (channels[0].get("alternatives") or []) if channels else []
    best = alternatives[0] if alternatives else {}
    raw_words = best.get("words") or []

    # metadata.duration > last word end > last utterance end
    duration = float((body.get("metadata") or {}).get("duration") or 0.0)
    if duration <= 0:
        duration = _last_end(raw_words)
    if duration <= 0:
        duration = _last_end(results.get("utterances") or [])

    words = [
        Word(
            word=str(w.get("word", "")),
            start=float(w.get("start") or 0.0),
            end=float(w.get("end") or 0.0),
            confidence=float(w.get("confidence") or 0.0),
        )
        for w in raw_words
    ]
    return TranscriptResult(
        transcript=best.get("transcript") or "",
        confidence=float(best.get("confidence") or 0.0),
        duration_seconds=duration,
        words=words,
        model=model,
        language=language,
    )


class DeepgramTranscriber:
    """Pre-recorded transcription against the Deepgram listen endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.deepgram.com/v1/listen",
        model: str = "nova-2",
        language: str = "en-US",
        timeout_seconds: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.language = language
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def transcribe(self, audio: bytes, *, mime_type: Optional[str] = None) -> TranscriptResult:
        if not self.api_key:
            raise TranscriptionProviderError("DEEPGRAM_API_KEY is not configured")

        params = {
            "model": self.model,
            "language": self.language,
            "smart_format": "true",
            "punctuate": "true",
            "diarize": "false",
            "utterances": "true",
        }
        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": mime_type or "application/octet-stream",
        }
        try:
            r = self.session.post(
                self.base_url,
                params=params,
                headers=headers,
                data=audio,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise TranscriptionProviderError(f"Deepgram timed out after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise TranscriptionProviderError(f"Deepgram request failed: {exc}") from exc

        if r.status_code != 200:
            raise TranscriptionProviderError(f"Deepgram error: {r.status_code} {r.text[:500]}")
        try:
            body = r.json()
        except ValueError as exc:
            raise TranscriptionProviderError("Deepgram returned a non-JSON body") from exc

        result = parse_listen_response(body, model=self.model, language=self.language)
        logger.debug("Deepgram duration %.2fs for %d bytes", result.duration_seconds, len(audio))
        return result
