"""
Tipo de cambio SAR -> USD para PayPal (PayPal liquida en USD, el marketplace cobra en SAR).

Colaborador intercambiable: ``HttpFxRateProvider`` consulta APIs públicas,
``FixedFxRateProvider`` fija un tipo (paridad SAR/USD o tests).
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx

from ..errors import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_SOURCES = (
    "https://open.er-api.com/v6/latest/SAR",
    "https://api.exchangerate.host/latest?base=SAR&symbols=USD",
)


class FxRateProvider(ABC):
    @abstractmethod
    async def sar_to_usd(self) -> float:
        ...


class FixedFxRateProvider(FxRateProvider):
    def __init__(self, rate: float):
        if not rate or rate <= 0:
            raise ValueError("FX rate must be positive")
        self.rate = float(rate)

    async def sar_to_usd(self) -> float:
        return self.rate


class HttpFxRateProvider(FxRateProvider):
    def __init__(
        self,
        sources: Sequence[str] = DEFAULT_SOURCES,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.sources = list(sources)
        self._timeout = timeout
        self._transport = transport

    async def sar_to_usd(self) -> float:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for url in self.sources:
                rate = await self._fetch(client, url)
                if rate:
                    return rate
        # Sin tipo de cambio no se crea la orden: nunca 1:1 ni un tipo inventado
        raise GatewayError("FX", "SAR to USD rate unavailable")

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> Optional[float]:
        try:
            response = await client.get(url)
            response.raise_for_status()
            data: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("FX source %s failed: %s", url, exc)
            return None
        rate = (data.get("rates") or {}).get("USD") if isinstance(data, dict) else None
        try:
            rate = float(rate) if rate is not None else None
        except (TypeError, ValueError):
            rate = None
        if not rate or rate <= 0:
            logger.warning("FX source %s returned no USD rate", url)
            return None
        return rate
