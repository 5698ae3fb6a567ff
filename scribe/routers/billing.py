from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from scribe.auth.deps import get_authenticated_user
from scribe.core.errors import EntitlementNotFound, InvalidRequest
from scribe.models import CancelSubscriptionReq, CheckoutSessionReq
from scribe.plans import paid_plan_from_name
from scribe.services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


def require_same_user(user: Dict[str, str], body_user_id: str) -> str:
    if body_user_id != user["user_id"]:
        raise HTTPException(403, {"error": "User does not match requested identity", "code": "forbidden"})
    return body_user_id


@router.post("/checkout-session")
@router.post("/api/create-checkout-session")
def create_checkout_session(
    body: CheckoutSessionReq,
    user: Dict[str, str] = Depends(get_authenticated_user),
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    user_id = require_same_user(user, body.user_id)
    plan = paid_plan_from_name(body.plan_name)
    if plan is None:
        raise InvalidRequest(f"Unknown plan: {body.plan_name}")

    logger.info("Creating checkout session for %s (plan=%s price=%s)", user_id, plan.display_name, body.price_id)
    session = services.gateway.create_checkout_session(
        price_id=body.price_id,
        plan_name=plan.display_name,
        user_id=user_id,
        user_email=body.user_email or user.get("email") or None,
    )
    return {"url": session["url"]}


@router.post("/cancel-subscription")
@router.post("/api/cancel-subscription")
def cancel_subscription(
    body: CancelSubscriptionReq,
    user: Dict[str, str] = Depends(get_authenticated_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    user_id = require_same_user(user, body.user_id)
    profile = services.store.get(user_id)
    if profile is None:
        raise EntitlementNotFound()
    if profile.stripe_subscription_id != body.subscription_id:
        raise HTTPException(403, {"error": "Subscription does not belong to this user", "code": "forbidden"})

    logger.info("Cancelling subscription %s for %s at period end", body.subscription_id, user_id)
    sub = services.gateway.cancel_at_period_end(body.subscription_id)
    # plan stays active until the provider sends customer.subscription.deleted
    services.store.mark_cancel_at_period_end(user_id, subscription_id=body.subscription_id)
    return {
        "success": True,
        "message": "Subscription will be cancelled at the end of the current billing period",
        "subscriptionId": sub["id"],
        "cancelAtPeriodEnd": sub["cancel_at_period_end"],
    }


@router.post("/webhooks/provider")
@router.post("/api/webhooks/stripe")
async def provider_webhook(req: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    return await run_in_threadpool(services.lifecycle.handle_webhook, payload, sig)
