from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from scribe.auth.deps import get_authenticated_user
from scribe.models import CreditCheckReq
from scribe.services.container import Services, get_services
from scribe.services.policy import evaluate

router = APIRouter(tags=["entitlements"])


@router.get("/api/entitlement")
@router.get("/api/me")
def get_entitlement(
    user: Dict[str, str] = Depends(get_authenticated_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    profile = services.store.get_or_create(user["user_id"], user.get("email", ""))
    return profile.as_dict()


@router.post("/api/credits/check")
def check_credits(
    body: CreditCheckReq,
    user: Dict[str, str] = Depends(get_authenticated_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    profile = services.store.get_or_create(user["user_id"], user.get("email", ""))
    return evaluate(profile, body.duration_minutes).as_dict()
