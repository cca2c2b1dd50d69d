"""
PayPal Orders v2 con intent AUTHORIZE.

El marketplace cobra en SAR pero PayPal liquida en USD: cada orden guarda el
``amount_usd`` y el ``fx_rate`` usados, y ambos son obligatorios.
"""
import logging
import time
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..errors import ConfigurationError, GatewayError, ValidationError
from ..schemas.payment import PayPalPayload
from ..utils import round_money
from .base import GatewayIntent, GatewayResult, HttpGateway
from .fx import FxRateProvider

logger = logging.getLogger(__name__)

AUTHORIZATION_STATUS_MAP = {
    "CREATED": "AUTHORIZED",
    "PENDING": "AUTHORIZED",
    "PARTIALLY_CAPTURED": "CAPTURED",
    "CAPTURED": "CAPTURED",
    "VOIDED": "VOIDED",
    "DENIED": "FAILED",
    "EXPIRED": "FAILED",
}

CAPTURE_STATUS_MAP = {
    "COMPLETED": "CAPTURED",
    "PENDING": "CAPTURED",
    "DECLINED": "FAILED",
    "FAILED": "FAILED",
}


class PayPalGateway(HttpGateway):
    name = "PAYPAL"

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        fx: FxRateProvider,
        base_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ConfigurationError("Missing PayPal credentials")
        super().__init__(base_url=base_url, timeout=timeout, transport=transport)
        self._client_auth = httpx.BasicAuth(client_id, client_secret)
        self._fx = fx
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        data = await self.request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=self._client_auth,
        )
        token = data.get("access_token")
        if not token:
            raise GatewayError(self.name, "PayPal auth response without access_token", raw=data)
        # margen de un minuto antes de la expiración real
        self._token = token
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return token

    async def _api(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        token = await self.access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        headers.update(kwargs.pop("headers", None) or {})
        return await self.request(method, path, headers=headers, **kwargs)

    # ---------- interfaz común ----------

    async def create_intent(
        self,
        amount_sar: float,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        fx_rate = await self._fx.sar_to_usd()
        amount_usd = round_money(float(amount_sar) * float(fx_rate)) if fx_rate else None
        if not amount_usd or amount_usd <= 0 or not fx_rate:
            raise GatewayError(self.name, "Currency conversion missing amountUsd or fxRate")

        purchase_unit: Dict[str, Any] = {
            "amount": {"currency_code": "USD", "value": f"{amount_usd:.2f}"},
        }
        booking_id = (metadata or {}).get("bookingId")
        if booking_id:
            purchase_unit["custom_id"] = str(booking_id)

        headers = {"PayPal-Request-Id": idempotency_key} if idempotency_key else None
        data = await self._api(
            "POST",
            "/v2/checkout/orders",
            json_body={"intent": "AUTHORIZE", "purchase_units": [purchase_unit]},
            headers=headers,
        )
        order_id = data.get("id")
        if not order_id:
            raise GatewayError(self.name, "PayPal order response without id", raw=data)
        return GatewayIntent(
            gateway=self.name,
            reference=order_id,
            amount=amount_usd,
            currency="USD",
            amount_sar=round_money(amount_sar),
            amount_usd=amount_usd,
            fx_rate=float(fx_rate),
            raw=data,
        )

    async def confirm_or_authorize(self, reference: str, payload: Any = None) -> GatewayResult:
        """
        ``payload`` trae el authorizationId que devuelve el SDK JS tras la aprobación;
        se verifica contra la API antes de darlo por bueno.
        """
        if isinstance(payload, PayPalPayload):
            parsed = payload
        else:
            try:
                parsed = PayPalPayload.model_validate({**dict(payload or {}), "order_id": reference, "gateway": self.name})
            except (PydanticValidationError, TypeError, ValueError) as exc:
                raise GatewayError(self.name, "PayPal payload missing authorizationId", raw=payload) from exc

        data = await self._api("GET", f"/v2/payments/authorizations/{parsed.authorization_id}")
        related_order = ((data.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if related_order and related_order != parsed.order_id:
            raise GatewayError(
                self.name,
                f"Authorization {parsed.authorization_id} belongs to order {related_order}",
                raw=data,
            )
        status = AUTHORIZATION_STATUS_MAP.get(str(data.get("status", "")).upper())
        if status is None:
            raise GatewayError(self.name, f"Unknown PayPal authorization status: {data.get('status')}", raw=data)
        return GatewayResult(
            gateway=self.name,
            status=status,
            reference=parsed.order_id,
            authorization_id=parsed.authorization_id,
            raw=data,
        )

    async def capture_authorization(self, authorization_id: str) -> GatewayResult:
        data = await self._api("POST", f"/v2/payments/authorizations/{authorization_id}/capture")
        capture_id = data.get("id")
        status = CAPTURE_STATUS_MAP.get(str(data.get("status", "")).upper())
        if not capture_id or status is None:
            raise GatewayError(self.name, "Malformed PayPal capture response", raw=data)
        return GatewayResult(
            gateway=self.name,
            status=status,
            reference=authorization_id,
            authorization_id=authorization_id,
            capture_id=capture_id,
            raw=data,
        )

    async def void_authorization(self, authorization_id: str) -> GatewayResult:
        data = await self._api("POST", f"/v2/payments/authorizations/{authorization_id}/void")
        return GatewayResult(
            gateway=self.name,
            status="VOIDED",
            reference=authorization_id,
            authorization_id=authorization_id,
            raw=data,
        )

    async def refund(self, reference: str, amount: Optional[float] = None) -> GatewayResult:
        """``reference`` es el captureId; ``amount`` en USD (moneda de la orden)."""
        if amount is not None and amount <= 0:
            raise ValidationError("Refund amount must be positive")
        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"currency_code": "USD", "value": f"{round_money(amount):.2f}"}
        data = await self._api("POST", f"/v2/payments/captures/{reference}/refund", json_body=body)
        return GatewayResult(
            gateway=self.name,
            status="REFUNDED",
            reference=reference,
            capture_id=reference,
            refund_id=data.get("id"),
            raw=data,
        )
