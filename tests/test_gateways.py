import json

import httpx
import pytest

from marketplace.errors import ConfigurationError, GatewayError, ValidationError
from marketplace.gateways.fx import FixedFxRateProvider, FxRateProvider, HttpFxRateProvider
from marketplace.gateways.moyasar import MoyasarGateway
from marketplace.gateways.paypal import PayPalGateway


def _moyasar(handler) -> MoyasarGateway:
    return MoyasarGateway(
        secret_key="sk_test_123",
        callback_url="https://www.link-22.com/payment/callback",
        transport=httpx.MockTransport(handler),
    )


def _paypal(handler, fx: FxRateProvider = None) -> PayPalGateway:
    return PayPalGateway(
        client_id="client",
        client_secret="secret",
        fx=fx or FixedFxRateProvider(0.2666),
        base_url="https://api-m.sandbox.paypal.com",
        transport=httpx.MockTransport(handler),
    )


# ---------- Moyasar ----------

async def test_moyasar_create_payment_sends_halalas_and_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pay_1", "status": "initiated", "amount": 10050})

    intent = await _moyasar(handler).create_intent(100.5, metadata={"bookingId": "b1"}, idempotency_key="key-1")

    assert intent.reference == "pay_1"
    assert intent.amount == 100.5
    assert seen["auth"].startswith("Basic ")
    assert seen["body"]["amount"] == 10050
    assert seen["body"]["source"] == {"type": "creditcard"}
    assert seen["body"]["callback_url"] == "https://www.link-22.com/payment/callback"
    assert seen["body"]["given_id"] == "key-1"
    assert seen["body"]["description"] == "Booking Payment"


async def test_moyasar_error_keeps_status_and_message():
    def handler(request):
        return httpx.Response(400, json={"type": "invalid_request_error", "message": "Amount is invalid"})

    with pytest.raises(GatewayError) as exc:
        await _moyasar(handler).create_payment(1)
    assert exc.value.status_code == 400
    assert exc.value.message == "Amount is invalid"
    assert exc.value.to_dict()["gateway"] == "MOYASAR"


async def test_moyasar_network_failure_is_502():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(GatewayError) as exc:
        await _moyasar(handler).fetch_payment("pay_1")
    assert exc.value.status_code == 502


def test_moyasar_without_key_fails_fast():
    with pytest.raises(ConfigurationError):
        MoyasarGateway(secret_key=None)


@pytest.mark.parametrize(
    "status, expected",
    [("paid", "CAPTURED"), ("captured", "CAPTURED"), ("failed", "FAILED"), ("refunded", "REFUNDED"), ("authorized", "AUTHORIZED")],
)
async def test_moyasar_status_mapping(status, expected):
    gateway = _moyasar(lambda request: httpx.Response(500))
    result = await gateway.confirm_or_authorize("pay_1", {"id": "pay_1", "status": status, "amount": 500})
    assert result.status == expected
    assert result.amount_minor == 500


async def test_moyasar_unknown_status_and_mismatched_id_are_errors():
    gateway = _moyasar(lambda request: httpx.Response(500))
    with pytest.raises(GatewayError):
        await gateway.confirm_or_authorize("pay_1", {"id": "pay_1", "status": "teleported"})
    with pytest.raises(GatewayError):
        await gateway.confirm_or_authorize("pay_1", {"id": "pay_2", "status": "paid"})


async def test_moyasar_partial_refund_in_halalas():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "pay_1", "status": "paid", "refunded": 2500})

    result = await _moyasar(handler).refund("pay_1", 25)
    assert seen["path"] == "/v1/payments/pay_1/refund"
    assert seen["body"] == {"amount": 2500}
    assert result.status == "REFUNDED"


async def test_moyasar_zero_refund_is_not_a_full_refund():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"id": "pay_1", "status": "refunded"})

    with pytest.raises(ValidationError):
        await _moyasar(handler).refund("pay_1", 0)
    assert calls == []


async def test_moyasar_apple_pay_session():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/v1/applepay/initiate"
        assert body["domain_name"] == "www.link-22.com"
        return httpx.Response(200, json={"merchantSessionIdentifier": "abc"})

    data = await _moyasar(handler).apple_pay_session("https://apple-pay-gateway.apple.com/x", "Link", "www.link-22.com")
    assert data["merchantSessionIdentifier"] == "abc"


# ---------- PayPal ----------

def _paypal_handler(calls):
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
        if path == "/v2/payments/authorizations/AUTH-1/void":
            return httpx.Response(204)
        if path == "/v2/payments/captures/CAP-1/refund":
            return httpx.Response(201, json={"id": "REF-1", "status": "COMPLETED"})
        return httpx.Response(404, json={"message": "not found"})
    return handler


async def test_paypal_order_is_priced_in_usd_with_fx_metadata():
    calls = []
    intent = await _paypal(_paypal_handler(calls)).create_intent(100, metadata={"bookingId": "b1"}, idempotency_key="req-1")

    assert intent.reference == "ORDER-1"
    assert intent.fx_rate == 0.2666
    assert intent.amount_usd == 26.66
    assert intent.amount_sar == 100

    order_call = calls[-1]
    body = json.loads(order_call.content)
    assert body["intent"] == "AUTHORIZE"
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "26.66"}
    assert body["purchase_units"][0]["custom_id"] == "b1"
    assert order_call.headers["Authorization"] == "Bearer A21"
    assert order_call.headers["PayPal-Request-Id"] == "req-1"


async def test_paypal_order_fails_hard_without_fx_rate():
    class NoRate(FxRateProvider):
        async def sar_to_usd(self):
            return None

    calls = []
    with pytest.raises(GatewayError) as exc:
        await _paypal(_paypal_handler(calls), fx=NoRate()).create_intent(100)
    assert "amountUsd or fxRate" in exc.value.message
    assert not any(c.url.path == "/v2/checkout/orders" for c in calls)


async def test_paypal_token_is_cached():
    calls = []
    gateway = _paypal(_paypal_handler(calls))
    await gateway.create_intent(100)
    await gateway.create_intent(100)
    assert sum(1 for c in calls if c.url.path == "/v1/oauth2/token") == 1


async def test_paypal_authorize_capture_void_refund():
    calls = []
    gateway = _paypal(_paypal_handler(calls))

    authorized = await gateway.confirm_or_authorize("ORDER-1", {"authorization_id": "AUTH-1"})
    assert authorized.status == "AUTHORIZED"
    assert authorized.authorization_id == "AUTH-1"

    captured = await gateway.capture_authorization("AUTH-1")
    assert (captured.status, captured.capture_id) == ("CAPTURED", "CAP-1")

    voided = await gateway.void_authorization("AUTH-1")
    assert voided.status == "VOIDED"

    refunded = await gateway.refund("CAP-1", 10)
    assert refunded.refund_id == "REF-1"
    assert json.loads(calls[-1].content) == {"amount": {"currency_code": "USD", "value": "10.00"}}


async def test_paypal_confirm_requires_authorization_id():
    gateway = _paypal(_paypal_handler([]))
    with pytest.raises(GatewayError):
        await gateway.confirm_or_authorize("ORDER-1", {})


async def test_paypal_authorization_from_another_order_is_rejected():
    gateway = _paypal(_paypal_handler([]))
    with pytest.raises(GatewayError):
        await gateway.confirm_or_authorize("ORDER-9", {"authorization_id": "AUTH-1"})


# ---------- FX ----------

async def test_fx_falls_back_to_second_source():
    def handler(request):
        if request.url.host == "open.er-api.com":
            return httpx.Response(503)
        return httpx.Response(200, json={"rates": {"USD": 0.2667}})

    rate = await HttpFxRateProvider(transport=httpx.MockTransport(handler)).sar_to_usd()
    assert rate == 0.2667


async def test_fx_without_any_source_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"result": "error"})

    with pytest.raises(GatewayError):
        await HttpFxRateProvider(transport=httpx.MockTransport(handler)).sar_to_usd()


def test_fixed_fx_rate_must_be_positive():
    with pytest.raises(ValueError):
        FixedFxRateProvider(0)
