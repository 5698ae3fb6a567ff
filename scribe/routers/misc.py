from __future__ import annotations

from fastapi import APIRouter

from scribe.plans import list_plans

router = APIRouter(tags=["misc"])

@router.get("/healthz")
@router.get("/api/ping")
async def ping():
    return {"ok": True}

@router.get("/api/plans")
async def plans():
    return {"plans": list_plans()}
