from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from scribe.auth.deps import get_authenticated_user
from scribe.core.errors import InvalidRequest
from scribe.core.normalize import client_ip_from_request, normalize_mime
from scribe.core.settings import S
from scribe.services.container import Services, get_services
from scribe.services.duration import estimate_duration_minutes
from scribe.services.rate_limit import rate_limit_or_429

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transcription"])


def check_audio_type(upload: UploadFile) -> str:
    mime = normalize_mime(upload.content_type)
    if mime not in S.allowed_audio_types:
        raise HTTPException(415, {"error": f"Unsupported audio type: {mime or 'unknown'}", "code": "unsupported_media_type"})
    return mime


async def read_limited(upload: UploadFile) -> bytes:
    too_large = HTTPException(
        413,
        {"error": f"File exceeds the {S.max_upload_bytes // (1024 * 1024)}MB limit", "code": "file_too_large"},
    )
    if upload.size is not None and upload.size > S.max_upload_bytes:
        raise too_large
    data = await upload.read(S.max_upload_bytes + 1)
    if len(data) > S.max_upload_bytes:
        raise too_large
    if not data:
        raise InvalidRequest("Audio file is empty")
    return data


@router.post("/transcribe")
@router.post("/api/transcribe")
async def transcribe(
    request: Request,
    audio: Optional[UploadFile] = File(default=None),
    duration_minutes: Optional[float] = Form(default=None),
    user: Dict[str, str] = Depends(get_authenticated_user),
    services: Services = Depends(get_services),
) -> Any:
    rate_limit_or_429(services.transcribe_limiter, client_ip_from_request(request))

    if audio is None:
        raise InvalidRequest("No audio file provided")
    mime = check_audio_type(audio)
    data = await read_limited(audio)
    estimated = estimate_duration_minutes(duration_minutes, len(data), mime)

    await run_in_threadpool(services.store.get_or_create, user["user_id"], user.get("email", ""))
    outcome = await run_in_threadpool(
        services.orchestrator.submit, user["user_id"], data, estimated, mime_type=mime
    )
    body = outcome.as_dict(file_name=audio.filename or "", file_size=len(data), mime_type=mime)
    if not outcome.completed:
        return JSONResponse(status_code=403, content=body)
    return body
