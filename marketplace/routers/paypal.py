# marketplace/routers/paypal.py
"""
PayPal Orders v2 (AUTHORIZE): el cliente aprueba en el SDK JS, el servidor
verifica la autorización y la captura o anula después.
"""
from fastapi import APIRouter, Depends, Request
import logging
import uuid

from ..dependencies import get_services
from ..errors import ForbiddenError, NotFoundError
from ..schemas.payment import (
    PayPalAuthorizationAction,
    PayPalAuthorizeRequest,
    PayPalCreateOrder,
    PayPalOrderMetaRequest,
    PayPalPayload,
)
from ..security import Actor, get_current_actor
from ..utils import to_id
from ..middleware.rate_limit import apply_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()


def _paypal(services: dict):
    return services["reconciler"].gateway_factory("PAYPAL")


async def _payment_for(services: dict, actor: Actor, *, order_id: str = None, authorization_id: str = None) -> dict:
    payments = services["payments"]
    if order_id:
        payment = await payments.find_by_order("PAYPAL", order_id)
    else:
        payment = await payments.find_by_authorization(authorization_id)
    if not payment:
        raise NotFoundError("PayPal order not found")
    if not actor.is_admin and payment.get("client_id") not in (None, actor.uid):
        raise ForbiddenError("No access to this payment")
    return payment


@router.post("/create-order")
async def create_order(
    request: Request,
    body: PayPalCreateOrder,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    # Rate limiting: máximo 10 órdenes por minuto por IP
    apply_rate_limit(request, "10/minute")
    reconciler = services["reconciler"]
    booking = await reconciler.payable_booking(body.booking_id, actor, body.amount_sar)

    intent = await _paypal(services).create_intent(
        body.amount_sar,
        metadata={"bookingId": body.booking_id},
        idempotency_key=str(uuid.uuid4()),
    )
    await reconciler.record_intent(intent, booking)
    return {"orderId": intent.reference, "amountUsd": intent.amount_usd, "fxRate": intent.fx_rate}


@router.post("/order-meta")
async def order_meta(
    body: PayPalOrderMetaRequest,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    payment = await _payment_for(services, actor, order_id=body.order_id)
    return {"amountUsd": payment.get("amount_usd"), "fxRate": payment.get("fx_rate")}


@router.post("/authorize")
async def authorize(
    body: PayPalAuthorizeRequest,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    """El SDK devuelve el authorizationId; se comprueba contra la API antes de guardarlo."""
    payment = await _payment_for(services, actor, order_id=body.order_id)
    result = await _paypal(services).confirm_or_authorize(
        body.order_id,
        PayPalPayload(order_id=body.order_id, authorization_id=body.authorization_id),
    )
    updated = await services["reconciler"].advance(payment, result)
    return to_id(updated)


@router.post("/capture-authorization")
async def capture_authorization(
    body: PayPalAuthorizationAction,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    payment = await _payment_for(services, actor, authorization_id=body.authorization_id)
    reconciler = services["reconciler"]
    result = await _paypal(services).capture_authorization(body.authorization_id)
    updated = await reconciler.advance(payment, result)
    await reconciler.settle_booking(updated)
    return {"captureId": result.capture_id, "status": result.status}


@router.post("/void-authorization")
async def void_authorization(
    body: PayPalAuthorizationAction,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    payment = await _payment_for(services, actor, authorization_id=body.authorization_id)
    result = await _paypal(services).void_authorization(body.authorization_id)
    await services["reconciler"].advance(payment, result)
    return {"status": "VOIDED"}
