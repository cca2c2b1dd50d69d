# marketplace/routers/bookings.py
from fastapi import APIRouter, Depends, Path, Query, Request, status
from typing import List, Optional
import logging

from ..dependencies import get_services
from ..schemas.booking import BookingCreate, BookingOut, StatusPatch, BookingStatus
from ..security import Actor, get_current_actor
from ..services.lifecycle import PROVIDER_REJECTED
from ..utils import to_id
from ..middleware.rate_limit import apply_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()

BOOKING_ID = Path(..., pattern=r"^[0-9a-fA-F]{24}$")


def _to_out(doc: dict) -> dict:
    return to_id(doc)


@router.get("/mine", response_model=List[BookingOut])
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    docs = await services["lifecycle"].list_bookings(actor, status_filter)
    return [_to_out(d) for d in docs]


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: str = BOOKING_ID,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    doc = await services["lifecycle"].get_booking(booking_id, actor)
    return _to_out(doc)


@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: Request,
    payload: BookingCreate,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    # Rate limiting: máximo 15 reservas por minuto por IP
    apply_rate_limit(request, "15/minute")
    created = await services["lifecycle"].create_booking(actor, payload)
    return _to_out(created)


@router.patch("/{booking_id}/status", response_model=BookingOut)
async def patch_status(
    body: StatusPatch,
    booking_id: str = BOOKING_ID,
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    updated, changed = await services["lifecycle"].apply_transition(booking_id, body.status, actor, reason=body.reason)

    # Rechazo manual del proveedor: reembolso y aviso al cliente, sólo quien escribió
    if body.status == BookingStatus.rejected and changed:
        outcome = await services["reconciler"].refund_booking(updated["_id"], PROVIDER_REJECTED)
        refunded = None if outcome.get("error") == "No payment found" else bool(outcome.get("success"))
        await services["notifier"].booking_rejected(updated, refunded=refunded)
        updated = await services["bookings"].get(updated["_id"])

    return _to_out(updated)
