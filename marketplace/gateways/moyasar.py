"""
Moyasar: pago alojado con redirección (callback_url), importes en halalas.
"""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..errors import ConfigurationError, GatewayError, ValidationError
from ..schemas.payment import MoyasarPayload
from ..utils import round_money, to_minor_units
from .base import GatewayIntent, GatewayResult, HttpGateway

logger = logging.getLogger(__name__)

MOYASAR_API_BASE = "https://api.moyasar.com/v1"

STATUS_MAP = {
    "initiated": "CREATED",
    "authorized": "AUTHORIZED",
    "paid": "CAPTURED",
    "captured": "CAPTURED",
    "failed": "FAILED",
    "voided": "VOIDED",
    "refunded": "REFUNDED",
}


def normalize_status(status: Optional[str]) -> Optional[str]:
    return STATUS_MAP.get((status or "").lower())


class MoyasarGateway(HttpGateway):
    name = "MOYASAR"

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        callback_url: Optional[str] = None,
        base_url: str = MOYASAR_API_BASE,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not secret_key:
            raise ConfigurationError("Missing MOYASAR_SECRET_KEY")
        super().__init__(base_url=base_url, timeout=timeout, transport=transport)
        # Basic auth: la clave secreta es el usuario, contraseña vacía
        self._basic = httpx.BasicAuth(secret_key, "")
        self._callback_url = callback_url

    def _auth(self) -> httpx.Auth:
        return self._basic

    async def create_payment(
        self,
        amount: float,
        currency: str = "SAR",
        description: Optional[str] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        given_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Crea el pago en Moyasar y devuelve el objeto de la pasarela tal cual."""
        body: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "description": description or "Booking Payment",
            "callback_url": callback_url or self._callback_url,
            "metadata": metadata or {},
            "source": {"type": "creditcard"},
        }
        if given_id:
            body["given_id"] = given_id
        return await self.request("POST", "/payments", json_body=body)

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/payments/{payment_id}")

    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> Dict[str, Any]:
        if amount is not None and amount <= 0:
            raise ValidationError("Refund amount must be positive")
        body = {"amount": to_minor_units(amount)} if amount is not None else {}
        return await self.request("POST", f"/payments/{payment_id}/refund", json_body=body)

    async def apple_pay_session(self, validation_url: str, display_name: str, domain_name: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/applepay/initiate",
            json_body={
                "validation_url": validation_url,
                "display_name": display_name,
                "domain_name": domain_name,
            },
        )

    # ---------- interfaz común ----------

    async def create_intent(
        self,
        amount_sar: float,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> GatewayIntent:
        currency = currency or "SAR"
        data = await self.create_payment(
            amount_sar,
            currency=currency,
            description=description,
            callback_url=callback_url,
            metadata=metadata,
            given_id=idempotency_key,
        )
        payment_id = data.get("id")
        if not payment_id:
            raise GatewayError(self.name, "Moyasar payment response without id", raw=data)
        return GatewayIntent(
            gateway=self.name,
            reference=payment_id,
            amount=round_money(amount_sar),
            currency=currency,
            amount_sar=round_money(amount_sar),
            raw=data,
        )

    async def confirm_or_authorize(self, reference: str, payload: Any = None) -> GatewayResult:
        """
        Normaliza un webhook/callback de Moyasar. Sin payload se consulta el pago
        a la API (el callback de redirección no es de fiar por sí solo).
        """
        if payload is None:
            payload = await self.fetch_payment(reference)
        if isinstance(payload, MoyasarPayload):
            parsed = payload
        else:
            try:
                parsed = MoyasarPayload.model_validate({**dict(payload), "gateway": self.name})
            except (PydanticValidationError, TypeError, ValueError) as exc:
                raise GatewayError(self.name, "Malformed Moyasar payload", raw=payload) from exc

        if parsed.id != reference:
            raise GatewayError(self.name, f"Payload id {parsed.id} does not match {reference}", raw=payload)

        status = normalize_status(parsed.status)
        if status is None:
            raise GatewayError(self.name, f"Unknown Moyasar status: {parsed.status}", raw=parsed.model_dump())

        return GatewayResult(
            gateway=self.name,
            status=status,
            reference=parsed.id,
            capture_id=parsed.id if status == "CAPTURED" else None,
            message=parsed.message,
            amount_minor=parsed.amount,
            raw=parsed.model_dump(),
        )

    async def refund(self, reference: str, amount: Optional[float] = None) -> GatewayResult:
        data = await self.refund_payment(reference, amount)
        return GatewayResult(
            gateway=self.name,
            status="REFUNDED",
            reference=reference,
            refund_id=data.get("id"),
            message=data.get("message"),
            raw=data,
        )
