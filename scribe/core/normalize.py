from __future__ import annotations

from typing import Optional


def client_ip_from_request(req) -> str:
    xff = req.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return req.client.host if req.client else "0.0.0.0"


def normalize_mime(value: Optional[str]) -> str:
    # "audio/webm;codecs=opus" -> "audio/webm"
    return (value or "").split(";", 1)[0].strip().lower()
