import asyncio
import hashlib
import hmac
import io
import json
import time
import unittest
from types import SimpleNamespace
from typing import List, Optional, Tuple

from fastapi import HTTPException, UploadFile
from starlette.datastructures import Headers
from starlette.requests import Request

from scribe.auth.deps import get_authenticated_user
from scribe.core.errors import EntitlementNotFound, InvalidDuration, InvalidRequest, StoreUnavailable
from scribe.core.settings import S
from scribe.main import create_app, http_error_handler, scribe_error_handler
from scribe.models import CancelSubscriptionReq, CheckoutSessionReq, CreditCheckReq
from scribe.providers.payments import StripeGateway
from scribe.providers.transcription import TranscriptResult
from scribe.routers import billing, entitlements, misc, transcribe
from scribe.services.container import build_services
from scribe.services.rate_limit import FixedWindowRateLimiter

from conftest import FakeGateway, FakeTable, FakeTranscriber, put_profile

WEBHOOK_SECRET = "whsec_routes"
USER = {"user_id": "user-123", "email": "a@example.com"}


def build_request(
    path: str,
    *,
    method: str = "POST",
    body: bytes = b"",
    headers: Optional[List[Tuple[bytes, bytes]]] = None,
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": headers or [(b"content-type", b"application/json")],
        "query_string": b"",
        "client": ("127.0.0.1", 1234),
    }

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def upload(data: bytes, content_type: str = "audio/mpeg", filename: str = "talk.mp3") -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename, headers=Headers({"content-type": content_type}))


class RouteTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tables = SimpleNamespace(
            entitlements=FakeTable("user_id"),
            webhook_events=FakeTable("event_id"),
            rate_limits=FakeTable("rate_key"),
        )
        self.transcriber = FakeTranscriber(
            result=TranscriptResult(transcript="hi", confidence=0.9, duration_seconds=30.0, model="nova-2", language="en-US")
        )
        verifier = StripeGateway("sk_test", WEBHOOK_SECRET, success_url="http://x/ok", cancel_url="http://x/no")
        self.gateway = FakeGateway(verifier=verifier)
        self.services = build_services(
            S, tables=self.tables, transcriber=self.transcriber, gateway=self.gateway
        )


class EntitlementRoutesTests(RouteTestCase):
    def test_first_visit_creates_free_profile(self) -> None:
        body = entitlements.get_entitlement(user=USER, services=self.services)
        self.assertEqual(body["plan"], "free")
        self.assertEqual(body["credits"], S.signup_bonus_credits)
        self.assertEqual(body["maxFileDuration"], 1)
        self.assertIsNone(body["billing"])

    def test_credit_check(self) -> None:
        put_profile(self.tables.entitlements, "user-123", credit_balance=5)
        body = entitlements.check_credits(CreditCheckReq(durationMinutes=0.5), user=USER, services=self.services)
        self.assertTrue(body["canUse"])
        self.assertEqual(body["creditsRequired"], 1)

        body = entitlements.check_credits(CreditCheckReq(duration=3), user=USER, services=self.services)
        self.assertFalse(body["canUse"])
        self.assertEqual(body["code"], "duration_exceeds_plan")

    def test_credit_check_rejects_invalid_duration(self) -> None:
        put_profile(self.tables.entitlements, "user-123")
        with self.assertRaises(InvalidDuration):
            entitlements.check_credits(CreditCheckReq(duration_minutes=-2), user=USER, services=self.services)

    def test_plans_and_ping(self) -> None:
        plans = asyncio.run(misc.plans())["plans"]
        self.assertEqual([p["plan"] for p in plans], ["free", "basic"])
        self.assertEqual(asyncio.run(misc.ping()), {"ok": True})


class TranscribeRouteTests(RouteTestCase):
    def call(self, audio: Optional[UploadFile], duration: Optional[float] = None):
        req = build_request("/api/transcribe", headers=[(b"x-forwarded-for", b"9.9.9.9, 10.0.0.1")])
        return asyncio.run(
            transcribe.transcribe(req, audio=audio, duration_minutes=duration, user=USER, services=self.services)
        )

    def test_successful_transcription_debits_credits(self) -> None:
        put_profile(self.tables.entitlements, "user-123", credit_balance=5)
        body = self.call(upload(b"\x00" * 1000), duration=0.5)
        self.assertEqual(body["transcript"], "hi")
        self.assertEqual(body["credits"], {"charged": 1, "required": 1, "remaining": 4})
        self.assertEqual(body["metadata"]["fileName"], "talk.mp3")
        self.assertEqual(self.transcriber.calls[0]["mime_type"], "audio/mpeg")
        self.assertIn("rl#transcribe#9.9.9.9", self.tables.rate_limits.items)

    def test_denial_is_403_with_code(self) -> None:
        put_profile(self.tables.entitlements, "user-123", credit_balance=5)
        resp = self.call(upload(b"\x00" * 1000), duration=4)
        self.assertEqual(resp.status_code, 403)
        body = json.loads(resp.body)
        self.assertEqual(body["code"], "duration_exceeds_plan")
        self.assertEqual(self.transcriber.calls, [])

    def test_missing_file(self) -> None:
        with self.assertRaises(InvalidRequest):
            self.call(None)

    def test_unsupported_type(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            self.call(upload(b"abc", content_type="video/mp4"))
        self.assertEqual(exc.exception.status_code, 415)

    def test_first_transcription_creates_profile(self) -> None:
        body = self.call(upload(b"\x00" * 10), duration=0.5)
        self.assertEqual(body["transcript"], "hi")
        self.assertEqual(body["credits"]["remaining"], S.signup_bonus_credits - 1)
        self.assertEqual(self.tables.entitlements.items["user-123"]["plan_id"], "free")

    def test_non_positive_duration_is_rejected(self) -> None:
        put_profile(self.tables.entitlements, "user-123", credit_balance=5)
        for bad in (-5.0, 0.0):
            with self.assertRaises(InvalidDuration) as exc:
                self.call(upload(b"\x00" * 1000), duration=bad)
            self.assertEqual(exc.exception.status_code, 400)
            self.assertEqual(exc.exception.code, "invalid_duration")
        self.assertEqual(self.transcriber.calls, [])
        self.assertEqual(self.tables.entitlements.items["user-123"]["credit_balance"], 5)

    def test_rate_limited(self) -> None:
        put_profile(self.tables.entitlements, "user-123", credit_balance=500, plan_id="basic", max_file_duration_minutes=30)
        self.services.transcribe_limiter = FixedWindowRateLimiter(
            self.tables.rate_limits, scope="transcribe", max_requests=2, window_seconds=60, clock=lambda: 6000
        )
        for _ in range(2):
            self.call(upload(b"\x00" * 10), duration=0.1)
        with self.assertRaises(HTTPException) as exc:
            self.call(upload(b"\x00" * 10), duration=0.1)
        self.assertEqual(exc.exception.status_code, 429)


class BillingRouteTests(RouteTestCase):
    def test_checkout_session(self) -> None:
        put_profile(self.tables.entitlements, "user-123")
        body = billing.create_checkout_session(
            CheckoutSessionReq(priceId="price_basic", planName="Basic", userId="user-123"),
            user=USER,
            services=self.services,
        )
        self.assertEqual(body, {"url": "https://checkout.stripe.test/cs_test_123"})
        call = self.gateway.checkout_calls[0]
        self.assertEqual(call["plan_name"], "Basic")
        self.assertEqual(call["user_email"], "a@example.com")

    def test_checkout_rejects_other_user_and_unknown_plan(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            billing.create_checkout_session(
                CheckoutSessionReq(priceId="p", planName="Basic", userId="someone-else"), user=USER, services=self.services
            )
        self.assertEqual(exc.exception.status_code, 403)
        with self.assertRaises(InvalidRequest):
            billing.create_checkout_session(
                CheckoutSessionReq(priceId="p", planName="Free", userId="user-123"), user=USER, services=self.services
            )

    def test_cancel_subscription_marks_period_end(self) -> None:
        put_profile(
            self.tables.entitlements, "user-123", plan_id="basic", max_file_duration_minutes=30,
            stripe_customer_id="cus_1", stripe_subscription_id="sub_1",
        )
        body = billing.cancel_subscription(
            CancelSubscriptionReq(subscriptionId="sub_1", userId="user-123"), user=USER, services=self.services
        )
        self.assertTrue(body["success"])
        self.assertTrue(body["cancelAtPeriodEnd"])
        self.assertEqual(self.gateway.cancel_calls, ["sub_1"])
        item = self.tables.entitlements.items["user-123"]
        self.assertTrue(item["cancel_at_period_end"])
        self.assertEqual(item["plan_id"], "basic")

    def test_cancel_foreign_subscription(self) -> None:
        put_profile(self.tables.entitlements, "user-123", stripe_subscription_id="sub_1")
        with self.assertRaises(HTTPException) as exc:
            billing.cancel_subscription(
                CancelSubscriptionReq(subscriptionId="sub_other", userId="user-123"), user=USER, services=self.services
            )
        self.assertEqual(exc.exception.status_code, 403)
        self.assertEqual(self.gateway.cancel_calls, [])

    def test_cancel_without_profile(self) -> None:
        with self.assertRaises(EntitlementNotFound):
            billing.cancel_subscription(
                CancelSubscriptionReq(subscriptionId="sub_1", userId="user-123"), user=USER, services=self.services
            )

    def test_signed_webhook_applies_checkout(self) -> None:
        put_profile(self.tables.entitlements, "user-123", credit_balance=5)
        payload = json.dumps({
            "id": "evt_route",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_route", "customer": "cus_1", "subscription": "sub_1",
                "metadata": {"userId": "user-123", "planName": "Basic"},
            }},
        })
        ts = int(time.time())
        mac = hmac.new(WEBHOOK_SECRET.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
        req = build_request(
            "/api/webhooks/stripe",
            body=payload.encode(),
            headers=[(b"content-type", b"application/json"), (b"stripe-signature", f"t={ts},v1={mac}".encode())],
        )
        body = asyncio.run(billing.provider_webhook(req, services=self.services))
        self.assertEqual(body, {"received": True, "outcome": "applied"})
        self.assertEqual(self.tables.entitlements.items["user-123"]["credit_balance"], 505)


class AuthTests(unittest.TestCase):
    def test_dev_header_identity(self) -> None:
        req = build_request("/api/me", method="GET", headers=[(b"x-user-sub", b"dev-user"), (b"x-user-email", b"d@e.f")])
        self.assertEqual(asyncio.run(get_authenticated_user(req)), {"user_id": "dev-user", "email": "d@e.f"})

    def test_bearer_token_identity(self) -> None:
        req = build_request("/api/me", method="GET", headers=[(b"authorization", b"Bearer user-xyz")])
        self.assertEqual(asyncio.run(get_authenticated_user(req))["user_id"], "user-xyz")

    def test_missing_credentials(self) -> None:
        req = build_request("/api/me", method="GET", headers=[])
        with self.assertRaises(HTTPException) as exc:
            asyncio.run(get_authenticated_user(req))
        self.assertEqual(exc.exception.status_code, 401)


class AppTests(unittest.TestCase):
    def test_error_handlers_render_code(self) -> None:
        req = build_request("/api/transcribe")
        resp = asyncio.run(scribe_error_handler(req, StoreUnavailable("throttled")))
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(json.loads(resp.body), {"error": "throttled", "code": "store_unavailable"})

        resp = asyncio.run(http_error_handler(req, HTTPException(401, "No valid authorization header")))
        self.assertEqual(json.loads(resp.body), {"error": "No valid authorization header"})

    def test_routes_are_registered_on_both_paths(self) -> None:
        tables = SimpleNamespace(
            entitlements=FakeTable("user_id"), webhook_events=FakeTable("event_id"), rate_limits=FakeTable("rate_key")
        )
        app = create_app(build_services(S, tables=tables, transcriber=FakeTranscriber(), gateway=FakeGateway()))
        paths = set(app.openapi()["paths"])
        for path in (
            "/transcribe", "/api/transcribe",
            "/checkout-session", "/api/create-checkout-session",
            "/cancel-subscription", "/api/cancel-subscription",
            "/webhooks/provider", "/api/webhooks/stripe",
            "/api/entitlement", "/api/credits/check", "/api/plans", "/healthz",
        ):
            self.assertIn(path, paths)
