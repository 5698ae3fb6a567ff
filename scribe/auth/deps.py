from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException, Request

from scribe.core.settings import S


def _firebase_enabled() -> bool:
    return bool(S.firebase_project_id)


def _firebase_issuer() -> str:
    return f"https://securetoken.google.com/{S.firebase_project_id}"


@lru_cache(maxsize=1)
def _firebase_jwks() -> Dict[str, Any]:
    resp = requests.get(S.firebase_jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _resolve_firebase_key(kid: str) -> Dict[str, Any]:
    keys = _firebase_jwks().get("keys", [])
    for key in keys:
        if key.get("kid") == kid:
            return key
    # keys rotate; refetch once before giving up
    _firebase_jwks.cache_clear()
    for key in _firebase_jwks().get("keys", []):
        if key.get("kid") == kid:
            return key
    raise HTTPException(401, "Unknown signing key id")


def _decode_firebase_token(token: str) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc

    key = _resolve_firebase_key(header.get("kid", ""))
    public_key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            audience=S.firebase_project_id,
            issuer=_firebase_issuer(),
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc


def _decode_jwt_claims(token: str) -> Optional[Dict[str, Any]]:
    if token.count(".") != 2:
        return None
    _, payload, _ = token.split(".", 2)
    if not payload:
        return None
    padding = "=" * (-len(payload) % 4)
    try:
        decoded = base64.urlsafe_b64decode(payload + padding)
        data = json.loads(decoded.decode("utf-8"))
    except (ValueError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "No valid authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "No valid authorization header")
    return token.strip()


async def get_authenticated_user(request: Request) -> Dict[str, str]:
    """
    Firebase ID token verification when FIREBASE_PROJECT_ID is set.

    Dev fallback: X-User-Sub header, or Authorization: Bearer <user_id | unsigned jwt>
    """
    if _firebase_enabled():
        token = extract_bearer_token(request.headers.get("authorization", ""))
        payload = _decode_firebase_token(token)
        user_id = payload.get("user_id") or payload.get("sub")
        if not user_id:
            raise HTTPException(401, "Token missing subject")
        return {"user_id": str(user_id), "email": str(payload.get("email") or "")}

    fallback_user = request.headers.get("x-user-sub")
    if fallback_user:
        return {"user_id": fallback_user, "email": request.headers.get("x-user-email", "")}

    token = extract_bearer_token(request.headers.get("authorization", ""))
    claims = _decode_jwt_claims(token) or {}
    sub = claims.get("sub")
    if isinstance(sub, str) and sub.strip():
        return {"user_id": sub, "email": str(claims.get("email") or "")}
    return {"user_id": token, "email": ""}
