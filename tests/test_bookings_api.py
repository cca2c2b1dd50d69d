import json
from datetime import datetime, timedelta

import httpx
import pytest
from bson import ObjectId

from conftest import CLIENT_ID, PROVIDER_ID, SERVICE_ID, auth_headers
from marketplace.dependencies import get_gateway_factory
from marketplace.errors import ConfigurationError
from marketplace.gateways.fx import FixedFxRateProvider
from marketplace.gateways.moyasar import MoyasarGateway
from marketplace.gateways.paypal import PayPalGateway
from marketplace.middleware.rate_limit import build_limiter
from marketplace.security import PROVIDER, SYSTEM


def _booking_body(**overrides):
    start = datetime.utcnow().replace(microsecond=0) + timedelta(days=3)
    body = {
        "provider_id": PROVIDER_ID,
        "service_id": SERVICE_ID,
        "start_at": start.isoformat(),
        "end_at": (start + timedelta(hours=2)).isoformat(),
        "price_total": 180,
        "deposit_amount": 30,
    }
    body.update(overrides)
    return body


async def _create(api) -> dict:
    r = await api.post("/bookings", json=_booking_body(), headers=auth_headers(CLIENT_ID))
    assert r.status_code == 201, r.text
    return r.json()


async def test_health(api):
    r = await api.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


async def test_requests_without_token_are_rejected(api):
    r = await api.get("/bookings/mine")
    assert r.status_code == 401


async def test_booking_status_flow(api, outbox):
    booking = await _create(api)
    assert booking["status"] == "PENDING"
    assert booking["client_id"] == CLIENT_ID
    assert len(outbox.sent) == 2

    provider = auth_headers(PROVIDER_ID, PROVIDER)
    r = await api.patch(f"/bookings/{booking['id']}/status", json={"status": "ACCEPTED"}, headers=provider)
    assert r.status_code == 200 and r.json()["status"] == "ACCEPTED"

    r = await api.patch(f"/bookings/{booking['id']}/status", json={"status": "IN_PROGRESS"}, headers=provider)
    assert r.status_code == 200 and r.json()["status"] == "IN_PROGRESS"

    r = await api.patch(f"/bookings/{booking['id']}/status", json={"status": "COMPLETED"}, headers=provider)
    assert r.status_code == 200
    done = r.json()
    assert done["status"] == "COMPLETED"
    assert [h["to"] for h in done["status_history"]] == ["ACCEPTED", "IN_PROGRESS", "COMPLETED"]


async def test_invalid_transition_returns_409_with_current_status(api):
    booking = await _create(api)
    r = await api.patch(
        f"/bookings/{booking['id']}/status",
        json={"status": "COMPLETED"},
        headers=auth_headers(PROVIDER_ID, PROVIDER),
    )
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_TRANSITION"
    assert r.json()["currentStatus"] == "PENDING"


async def test_client_cannot_confirm(api):
    booking = await _create(api)
    r = await api.patch(f"/bookings/{booking['id']}/status", json={"status": "CONFIRMED"}, headers=auth_headers(CLIENT_ID))
    assert r.status_code == 403


async def test_system_role_in_token_is_ignored(api):
    booking = await _create(api)
    r = await api.patch(
        f"/bookings/{booking['id']}/status",
        json={"status": "CONFIRMED"},
        headers=auth_headers("intruder", SYSTEM),
    )
    assert r.status_code == 403


async def test_provider_rejection_notifies_client(api, outbox):
    booking = await _create(api)
    r = await api.patch(
        f"/bookings/{booking['id']}/status",
        json={"status": "REJECTED", "reason": "fully booked"},
        headers=auth_headers(PROVIDER_ID, PROVIDER),
    )
    assert r.status_code == 200
    assert r.json()["rejection_reason"] == "provider_rejected"
    assert r.json()["status_reason"] == "fully booked"
    rejected_mails = outbox.with_subject("Booking rejected")
    assert [m["to"] for m in rejected_mails] == ["sara@example.com"]
    assert "contact support" not in rejected_mails[0]["text"]


async def test_create_booking_validation_errors(api):
    r = await api.post(
        "/bookings",
        json=_booking_body(provider_id="ghost"),
        headers=auth_headers(CLIENT_ID),
    )
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    r = await api.post("/bookings", json=_booking_body(price_total=-5), headers=auth_headers(CLIENT_ID))
    assert r.status_code == 422


async def test_list_and_get(api):
    booking = await _create(api)

    mine = await api.get("/bookings/mine", headers=auth_headers(CLIENT_ID))
    assert [b["id"] for b in mine.json()] == [booking["id"]]

    pending = await api.get("/bookings/mine", params={"status": "PENDING"}, headers=auth_headers(PROVIDER_ID, PROVIDER))
    assert len(pending.json()) == 1
    accepted = await api.get("/bookings/mine", params={"status": "ACCEPTED"}, headers=auth_headers(PROVIDER_ID, PROVIDER))
    assert accepted.json() == []

    r = await api.get(f"/bookings/{booking['id']}", headers=auth_headers("client-2"))
    assert r.status_code == 403
    r = await api.get("/bookings/64b7f0c2a1b2c3d4e5f60718", headers=auth_headers(CLIENT_ID))
    assert r.status_code == 404


async def test_payments_for_booking(api):
    booking = await _create(api)
    r = await api.get(f"/payments/booking/{booking['id']}", headers=auth_headers(CLIENT_ID))
    assert r.status_code == 200
    assert r.json() == []


# ---------- PayPal ----------

@pytest.fixture
def paypal_calls(gateways):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={"id": "ORDER-1", "status": "CREATED"})
        if path == "/v2/payments/authorizations/AUTH-1":
            return httpx.Response(200, json={
                "id": "AUTH-1",
                "status": "CREATED",
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            })
        if path == "/v2/payments/authorizations/AUTH-1/capture":
            return httpx.Response(201, json={"id": "CAP-1", "status": "COMPLETED"})
        return httpx.Response(404, json={"message": "not found"})

    gateways["PAYPAL"] = PayPalGateway(
        client_id="id",
        client_secret="secret",
        fx=FixedFxRateProvider(0.25),
        transport=httpx.MockTransport(handler),
    )
    return calls


async def test_paypal_authorize_then_capture(api, paypal_calls, db):
    booking = await _create(api)
    await api.patch(
        f"/bookings/{booking['id']}/status",
        json={"status": "ACCEPTED"},
        headers=auth_headers(PROVIDER_ID, PROVIDER),
    )
    client = auth_headers(CLIENT_ID)

    r = await api.post("/paypal/create-order", json={"amountSar": 180, "bookingId": booking["id"]}, headers=client)
    assert r.status_code == 200
    assert r.json() == {"orderId": "ORDER-1", "amountUsd": 45.0, "fxRate": 0.25}

    r = await api.post("/paypal/order-meta", json={"orderId": "ORDER-1"}, headers=client)
    assert r.json() == {"amountUsd": 45.0, "fxRate": 0.25}

    r = await api.post("/paypal/authorize", json={"orderId": "ORDER-1", "authorizationId": "AUTH-1"}, headers=client)
    assert r.status_code == 200
    assert r.json()["status"] == "AUTHORIZED"

    r = await api.post("/paypal/capture-authorization", json={"authorizationId": "AUTH-1"}, headers=client)
    assert r.json() == {"captureId": "CAP-1", "status": "CAPTURED"}

    payment = await db.payments.find_one({"order_id": "ORDER-1"})
    assert payment["status"] == "CAPTURED"
    assert payment["currency"] == "USD"
    assert payment["amount_sar"] == 180
    assert (await db.bookings.find_one({"_id": ObjectId(booking["id"])}))["status"] == "CONFIRMED"


async def test_paypal_missing_credentials_is_500(api, app):
    def factory_error(name):
        raise ConfigurationError("Missing PayPal credentials")

    app.dependency_overrides[get_gateway_factory] = lambda: factory_error

    r = await api.post("/paypal/create-order", json={"amountSar": 50}, headers=auth_headers(CLIENT_ID))
    assert r.status_code == 500
    assert r.json() == {"error": "Missing PayPal credentials", "code": "CONFIGURATION_ERROR"}


# ---------- Moyasar ----------

async def test_moyasar_create_payment_records_booking_payment(api, gateways, db):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pay_1", "status": "initiated", "amount": 18000, "currency": "SAR"})

    gateways["MOYASAR"] = MoyasarGateway(secret_key="sk_test", transport=httpx.MockTransport(handler))
    booking = await _create(api)

    r = await api.post(
        "/moyasar/create-payment",
        json={"amount": 180, "metadata": {"bookingId": booking["id"]}},
        headers=auth_headers(CLIENT_ID),
    )
    assert r.status_code == 200
    assert r.json()["id"] == "pay_1"
    assert seen["body"]["amount"] == 18000
    assert seen["body"]["metadata"]["clientId"] == CLIENT_ID

    payment = await db.payments.find_one({"order_id": "pay_1"})
    assert payment["status"] == "CREATED"
    assert str(payment["booking_id"]) == booking["id"]


async def test_moyasar_gateway_error_is_passed_through(api, gateways):
    def handler(request):
        return httpx.Response(401, json={"type": "authentication_error", "message": "Invalid authorization credentials"})

    gateways["MOYASAR"] = MoyasarGateway(secret_key="sk_bad", transport=httpx.MockTransport(handler))
    r = await api.post("/moyasar/create-payment", json={"amount": 10}, headers=auth_headers(CLIENT_ID))
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid authorization credentials"
    assert r.json()["gateway"] == "MOYASAR"


async def test_moyasar_checkout_below_deposit_is_rejected(api, gateways):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "pay_1", "status": "initiated", "amount": 100})

    gateways["MOYASAR"] = MoyasarGateway(secret_key="sk_test", transport=httpx.MockTransport(handler))
    booking = await _create(api)

    r = await api.post(
        "/moyasar/create-payment",
        json={"amount": 1, "metadata": {"bookingId": booking["id"]}},
        headers=auth_headers(CLIENT_ID),
    )
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"
    assert seen == []


async def test_booking_creation_is_rate_limited(api, app):
    app.state.limiter = build_limiter()
    headers = auth_headers(CLIENT_ID)

    statuses = []
    for day in range(16):
        start = datetime.utcnow().replace(microsecond=0) + timedelta(days=3 + day)
        body = _booking_body(start_at=start.isoformat(), end_at=(start + timedelta(hours=1)).isoformat())
        r = await api.post("/bookings", json=body, headers=headers)
        statuses.append(r.status_code)

    assert statuses[:15] == [201] * 15
    assert statuses[15] == 429
