# marketplace/routers/stripe_routes.py
"""
Stripe (Apple Pay vía PaymentIntents) y su webhook firmado.
"""
from fastapi import APIRouter, Depends, Request
import logging
import uuid

from ..dependencies import get_services
from ..errors import ForbiddenError, MarketplaceError, NotFoundError
from ..gateways.base import GatewayResult
from ..schemas.payment import StripeConfirmRequest, StripeCreateIntent
from ..security import Actor, get_current_actor
from ..utils import to_id
from ..middleware.rate_limit import apply_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()

INTENT_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.amount_capturable_updated",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
}


def _stripe(services: dict):
    return services["reconciler"].gateway_factory("STRIPE")


@router.post("/create-payment-intent")
async def create_payment_intent(
    request: Request,
    body: StripeCreateIntent,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    # Rate limiting: máximo 10 intents por minuto por IP
    apply_rate_limit(request, "10/minute")
    reconciler = services["reconciler"]
    booking = await reconciler.payable_booking(body.booking_id, actor, body.amount_sar)

    intent = await _stripe(services).create_intent(
        body.amount_sar,
        metadata={"bookingId": body.booking_id, "clientId": actor.uid},
        idempotency_key=str(uuid.uuid4()),
    )
    await reconciler.record_intent(intent, booking)
    return {"clientSecret": intent.client_secret, "paymentIntentId": intent.reference}


@router.post("/confirm")
async def confirm(
    body: StripeConfirmRequest,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    """Tras el pago en el cliente: consulta el intent y aplica su estado."""
    payment = await services["payments"].find_by_order("STRIPE", body.payment_intent_id)
    if not payment:
        raise NotFoundError("PaymentIntent not found")
    if not actor.is_admin and payment.get("client_id") not in (None, actor.uid):
        raise ForbiddenError("No access to this payment")

    reconciler = services["reconciler"]
    result = await _stripe(services).confirm_or_authorize(body.payment_intent_id)
    updated = await reconciler.advance(payment, result)
    await reconciler.settle_booking(updated)
    return to_id(updated)


@router.post("/webhook")
async def webhook(request: Request, services: dict = Depends(get_services)):
    """
    Verifica la firma (400 si no es válida) y acusa recibo de todo evento válido,
    se procese o no.
    """
    payload = await request.body()
    gateway = _stripe(services)
    event = gateway.construct_event(payload, request.headers.get("Stripe-Signature"))

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    try:
        result = None
        if event_type in INTENT_EVENTS:
            result = await gateway.confirm_or_authorize(obj.get("id"), obj)
        elif event_type == "charge.refunded" and obj.get("refunded") and obj.get("payment_intent"):
            result = GatewayResult(
                gateway="STRIPE",
                status="REFUNDED",
                reference=obj["payment_intent"],
                raw={"charge": obj.get("id")},
            )
        if result is not None:
            await services["reconciler"].handle_event(f"stripe:{event.get('id')}", result)
        else:
            logger.info("Stripe event %s ignored", event_type)
    except MarketplaceError as exc:
        logger.error("Stripe event %s not applied (%s): %s", event.get("id"), exc.code, exc.message)
    except Exception:
        logger.exception("Stripe webhook processing failed for %s", event.get("id"))
    return {"received": True}
