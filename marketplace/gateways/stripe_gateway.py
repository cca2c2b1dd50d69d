"""
Stripe (Apple Pay vía PaymentIntents) con el SDK oficial.

El SDK es síncrono: las llamadas van a un threadpool para no bloquear el loop.
"""
import logging
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from ..errors import ConfigurationError, GatewayError, ValidationError
from ..schemas.payment import StripePayload
from ..utils import round_money, to_minor_units
from .base import GatewayAdapter, GatewayIntent, GatewayResult

logger = logging.getLogger(__name__)

INTENT_STATUS_MAP = {
    "succeeded": "CAPTURED",
    "requires_capture": "AUTHORIZED",
    "canceled": "VOIDED",
    "requires_payment_method": "FAILED",
}

# Estados intermedios: el cliente aún no terminó el flujo
PENDING_INTENT_STATUSES = {"requires_confirmation", "requires_action", "processing"}


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway(GatewayAdapter):
    name = "STRIPE"

    def __init__(self, *, secret_key: Optional[str], webhook_secret: Optional[str] = None, currency: str = "sar"):
        if not secret_key:
            raise ConfigurationError("Stripe not configured (STRIPE_SECRET_KEY)")
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self.currency = currency

    async def _call(self, fn, **kwargs: Any) -> Dict[str, Any]:
        try:
            result = await run_in_threadpool(fn, api_key=self._secret_key, **kwargs)
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc) or "Stripe error"
            logger.error("Stripe error %s: %s", getattr(exc, "http_status", None), message)
            raise GatewayError(
                self.name,
                message,
                status_code=getattr(exc, "http_status", None),
                raw=getattr(exc, "json_body", None),
            ) from exc
        return _as_dict(result)

    async def create_intent(
        self,
        amount_sar: float,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        currency = (currency or self.currency).lower()
        amount = to_minor_units(amount_sar)
        if amount <= 0:
            raise ValidationError("Invalid amount")

        kwargs: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {k: str(v) for k, v in (metadata or {}).items() if v is not None},
        }
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        data = await self._call(stripe.PaymentIntent.create, **kwargs)

        if not data.get("id") or not data.get("client_secret"):
            raise GatewayError(self.name, "PaymentIntent response without id or client_secret", raw=data)
        return GatewayIntent(
            gateway=self.name,
            reference=data["id"],
            amount=round_money(amount_sar),
            currency=currency.upper(),
            amount_sar=round_money(amount_sar),
            client_secret=data["client_secret"],
            raw=data,
        )

    async def retrieve_intent(self, intent_id: str) -> Dict[str, Any]:
        return await self._call(stripe.PaymentIntent.retrieve, id=intent_id)

    async def confirm_or_authorize(self, reference: str, payload: Any = None) -> GatewayResult:
        if payload is None:
            payload = await self.retrieve_intent(reference)
        if isinstance(payload, StripePayload):
            parsed = payload
        else:
            try:
                parsed = StripePayload.model_validate({**_as_dict(payload), "gateway": self.name})
            except (PydanticValidationError, TypeError, ValueError) as exc:
                raise GatewayError(self.name, "PaymentIntent payload missing client_secret or status", raw=payload) from exc

        if parsed.id != reference:
            raise GatewayError(self.name, f"PaymentIntent {parsed.id} does not match {reference}")

        status = INTENT_STATUS_MAP.get(parsed.status)
        if status is None:
            if parsed.status in PENDING_INTENT_STATUSES:
                status = "CREATED"
            else:
                raise GatewayError(self.name, f"Unknown PaymentIntent status: {parsed.status}")

        message = (parsed.last_payment_error or {}).get("message")
        return GatewayResult(
            gateway=self.name,
            status=status,
            reference=parsed.id,
            capture_id=parsed.latest_charge if status == "CAPTURED" else None,
            message=message,
            amount_minor=parsed.amount,
            raw=parsed.model_dump(exclude={"client_secret"}),
        )

    async def refund(self, reference: str, amount: Optional[float] = None) -> GatewayResult:
        if amount is not None and amount <= 0:
            raise ValidationError("Refund amount must be positive")
        kwargs: Dict[str, Any] = {"payment_intent": reference}
        if amount is not None:
            kwargs["amount"] = to_minor_units(amount)
        data = await self._call(stripe.Refund.create, **kwargs)
        if data.get("status") in ("failed", "canceled"):
            raise GatewayError(self.name, f"Refund {data.get('status')}", raw=data)
        return GatewayResult(
            gateway=self.name,
            status="REFUNDED",
            reference=reference,
            refund_id=data.get("id"),
            raw=data,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self._webhook_secret:
            raise ConfigurationError("Webhook secret not configured (STRIPE_WEBHOOK_SECRET)")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationError("Invalid webhook signature") from exc
        return _as_dict(event)
