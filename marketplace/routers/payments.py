# marketplace/routers/payments.py
from fastapi import APIRouter, Depends, Path
from typing import List
import logging

from ..dependencies import get_services
from ..schemas.payment import PaymentOut
from ..security import Actor, get_current_actor
from ..utils import to_id

logger = logging.getLogger(__name__)

router = APIRouter()


def to_payment_out(doc: dict) -> dict:
    """Documento de MongoDB -> PaymentOut (ids y fechas como string)."""
    return to_id(doc)


@router.get("/booking/{booking_id}", response_model=List[PaymentOut])
async def list_booking_payments(
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    services: dict = Depends(get_services),
    actor: Actor = Depends(get_current_actor),
):
    """Pagos de una reserva, del más antiguo al más reciente"""
    # Valida existencia y acceso
    await services["lifecycle"].get_booking(booking_id, actor)
    docs = await services["payments"].list_for_booking(booking_id)
    return [to_payment_out(d) for d in docs]
