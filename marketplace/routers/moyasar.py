# marketplace/routers/moyasar.py
"""
Proxy de Moyasar: crear/consultar/reembolsar pagos, sesión de Apple Pay y webhook.
La clave secreta nunca sale del servidor.
"""
from fastapi import APIRouter, Body, Depends, Request
from typing import Any, Dict, Optional
import logging
import uuid

from ..config import get_settings
from ..dependencies import get_services
from ..errors import GatewayError, MarketplaceError, ValidationError
from ..gateways.base import GatewayIntent
from ..schemas.payment import (
    ApplePaySessionRequest,
    MoyasarCreatePayment,
    MoyasarPayload,
    MoyasarRefund,
)
from ..security import Actor, get_current_actor, require_admin
from ..utils import round_money
from ..middleware.rate_limit import apply_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()


def _moyasar(services: dict):
    return services["reconciler"].gateway_factory("MOYASAR")


@router.post("/create-payment")
async def create_payment(
    request: Request,
    payload: MoyasarCreatePayment,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    # Rate limiting: máximo 10 pagos por minuto por IP
    apply_rate_limit(request, "10/minute")
    reconciler = services["reconciler"]
    booking_id = payload.metadata.get("bookingId")
    if booking_id and payload.currency.upper() != "SAR":
        raise ValidationError("Booking payments must be in SAR")
    booking = await reconciler.payable_booking(booking_id, actor, payload.amount)

    gateway = _moyasar(services)
    metadata = {**payload.metadata, "clientId": actor.uid}
    data = await gateway.create_payment(
        payload.amount,
        currency=payload.currency,
        description=payload.description,
        callback_url=payload.callback_url,
        metadata=metadata,
        given_id=str(uuid.uuid4()),
    )
    if not data.get("id"):
        raise GatewayError("MOYASAR", "Moyasar payment response without id", raw=data)

    if booking is not None:
        record = await reconciler.record_intent(_intent_from_payment(data, payload.amount, payload.currency), booking)
        result = await gateway.confirm_or_authorize(data["id"], data)
        # El pago con tarjeta puede volver ya resuelto (p. ej. sin 3DS)
        if result.status != "CREATED":
            payment = await reconciler.advance(record, result)
            await reconciler.settle_booking(payment)
    return data


def _intent_from_payment(data: Dict[str, Any], amount: float, currency: str) -> GatewayIntent:
    return GatewayIntent(
        gateway="MOYASAR",
        reference=data["id"],
        amount=round_money(amount),
        currency=currency,
        amount_sar=round_money(amount) if currency.upper() == "SAR" else None,
        raw=data,
    )


@router.get("/payment/{payment_id}")
async def get_payment(
    payment_id: str,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    return await _moyasar(services).fetch_payment(payment_id)


@router.post("/refund/{payment_id}")
async def refund_payment(
    payment_id: str,
    body: Optional[MoyasarRefund] = None,
    services: dict = Depends(get_services),
    actor: Actor = Depends(require_admin),
):
    """Reembolso total o parcial (importe en SAR)."""
    amount = body.amount if body else None
    record = await services["payments"].find_by_order("MOYASAR", payment_id)
    if record is None:
        return await _moyasar(services).refund_payment(payment_id, amount)

    updated, result = await services["reconciler"].refund_payment(record, amount, reason=f"admin:{actor.uid}")
    await services["reconciler"].settle_booking(updated)
    return result.raw if result is not None else {"id": payment_id, "status": "refunded"}


@router.post("/apple-pay-session")
async def apple_pay_session(
    body: ApplePaySessionRequest,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    settings = get_settings()
    return await _moyasar(services).apple_pay_session(
        body.validation_url,
        body.display_name or settings.apple_pay_display_name,
        body.domain_name or settings.apple_pay_domain,
    )


@router.post("/webhook")
async def webhook(
    payload: Dict[str, Any] = Body(...),
    services: dict = Depends(get_services),
):
    """
    Notificación de Moyasar. Siempre responde ``{"received": true}``; los fallos se registran.
    El estado se verifica contra la API antes de aplicarlo.
    """
    logger.info("Moyasar webhook received: id=%s status=%s", payload.get("id"), payload.get("status"))
    try:
        event = MoyasarPayload.model_validate({**payload, "gateway": "MOYASAR"})
        await _process_webhook(event, services)
    except MarketplaceError as exc:
        logger.error("Moyasar webhook not applied (%s): %s", exc.code, exc.message)
    except ValueError as exc:
        logger.error("Moyasar webhook payload rejected: %s", exc)
    except Exception:
        logger.exception("Moyasar webhook processing failed")
    return {"received": True}


async def _process_webhook(event: MoyasarPayload, services: dict) -> None:
    reconciler = services["reconciler"]
    gateway = _moyasar(services)
    # La fuente de verdad es la API, no el cuerpo del webhook
    result = await gateway.confirm_or_authorize(event.id)

    record = await services["payments"].find_by_order("MOYASAR", event.id)
    if record is None:
        booking_id = (result.raw.get("metadata") or {}).get("bookingId") or event.metadata.get("bookingId")
        if not booking_id:
            logger.warning("Moyasar payment %s has no booking; ignored", event.id)
            return
        amount = (result.raw.get("amount") or 0) / 100
        await reconciler.adopt_payment("MOYASAR", event.id, booking_id, amount, result.raw.get("currency") or "SAR")

    await reconciler.handle_event(f"moyasar:{event.id}:{result.status}", result)
