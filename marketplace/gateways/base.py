"""
Interfaz común de las pasarelas de pago.

Cada adaptador traduce entre el modelo normalizado (``GatewayIntent`` /
``GatewayResult``) y el formato de su pasarela. No hay lógica de negocio ni
reintentos: los errores suben como ``GatewayError`` o ``ConfigurationError``
y el llamador decide. Un ``create_intent`` reintentado debe reutilizar el
mismo ``idempotency_key``.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ..errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass
class GatewayIntent:
    gateway: str
    reference: str
    amount: float
    currency: str
    amount_sar: float
    amount_usd: Optional[float] = None
    fx_rate: Optional[float] = None
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResult:
    gateway: str
    status: str
    reference: str
    authorization_id: Optional[str] = None
    capture_id: Optional[str] = None
    refund_id: Optional[str] = None
    message: Optional[str] = None
    # importe informado por la pasarela en unidad mínima, si lo trae
    amount_minor: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    name: str = ""

    @abstractmethod
    async def create_intent(
        self,
        amount_sar: float,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        ...

    @abstractmethod
    async def confirm_or_authorize(self, reference: str, payload: Any = None) -> GatewayResult:
        ...

    @abstractmethod
    async def refund(self, reference: str, amount: Optional[float] = None) -> GatewayResult:
        ...


class HttpGateway(GatewayAdapter):
    """Pasarela REST sobre httpx; ``transport`` permite inyectar un MockTransport en tests."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _auth(self) -> httpx.Auth | None:
        return None

    async def _auth_headers(self) -> Dict[str, str]:
        return {}

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
        auth: httpx.Auth | None = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        final_headers = {"Accept": "application/json"}
        final_headers.update(await self._auth_headers())
        if headers:
            final_headers.update(headers)

        extra: Dict[str, Any] = {}
        auth = auth or self._auth()
        if auth is not None:
            extra["auth"] = auth

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.request(
                    method,
                    url,
                    json=json_body,
                    data=data,
                    headers=final_headers,
                    **extra,
                )
            except httpx.HTTPError as exc:
                logger.error("%s request failed for %s %s: %s", self.name, method, path, exc)
                raise GatewayError(self.name, f"{self.name} request failed: {exc}") from exc

        if response.status_code >= 400:
            body: Any
            try:
                body = response.json()
            except json.JSONDecodeError:
                body = response.text
            message = _error_message(body) or f"{self.name} error {response.status_code}"
            logger.error("%s API error %s for %s %s: %s", self.name, response.status_code, method, path, body)
            raise GatewayError(self.name, message, status_code=response.status_code, raw=body)

        if not response.content:
            return {}
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise GatewayError(self.name, f"{self.name} returned a non-JSON body", raw=response.text) from exc
        if not isinstance(payload, dict):
            raise GatewayError(self.name, f"{self.name} returned an unexpected body", raw=payload)
        return payload


def _error_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        for key in ("message", "error_description", "error", "type"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        return None
    if isinstance(body, str) and body:
        return body[:500]
    return None
