# marketplace/services/lifecycle.py
"""
Ciclo de vida de una reserva.

El grafo ``ALLOWED`` es la única fuente de verdad de las transiciones. Cada
cambio de estado es una escritura condicional de un solo documento (status,
updated_at y la entrada del historial a la vez); si otro escritor se adelanta
la escritura no aplica y se informa el estado real.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from ..repositories.bookings import BookingRepository
from ..repositories.directory import DirectoryRepository
from ..schemas.booking import BookingCreate, BookingStatus
from ..security import CLIENT, PROVIDER, Actor
from ..utils import as_utc, round_money, utcnow

logger = logging.getLogger(__name__)

S = BookingStatus

# Valores de rejection_reason; lo fija el servidor, nunca el texto del usuario
AUTO_REJECTED = "auto_rejected_timeout"
PROVIDER_REJECTED = "provider_rejected"

TERMINAL: frozenset = frozenset({
    S.rejected,
    S.completed,
    S.cancelled_by_client,
    S.cancelled_by_provider,
    S.no_show,
    S.refunded,
})

_EDGES: dict[BookingStatus, set[BookingStatus]] = {
    S.pending: {S.accepted, S.rejected, S.cancelled_by_client},
    S.accepted: {S.confirmed, S.in_progress, S.cancelled_by_client, S.cancelled_by_provider},
    S.confirmed: {S.in_progress, S.cancelled_by_client, S.cancelled_by_provider},
    S.in_progress: {S.completed, S.no_show, S.disputed},
    S.disputed: {S.completed},
}

# Cualquier estado no terminal puede pasar a REFUNDED (reversión del pago)
ALLOWED: dict[BookingStatus, frozenset] = {
    status: frozenset(_EDGES.get(status, set()) | ({S.refunded} if status not in TERMINAL else set()))
    for status in BookingStatus
}

# Destinos que puede pedir cada rol sobre sus propias reservas
ROLE_TARGETS: dict[str, frozenset] = {
    CLIENT: frozenset({S.cancelled_by_client, S.disputed}),
    PROVIDER: frozenset({
        S.accepted,
        S.rejected,
        S.in_progress,
        S.cancelled_by_provider,
        S.completed,
        S.no_show,
        S.disputed,
    }),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED.get(current, frozenset())


def _status(value: Any) -> BookingStatus:
    try:
        return value if isinstance(value, BookingStatus) else BookingStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid booking status: {value}")


class BookingLifecycle:
    def __init__(
        self,
        bookings: BookingRepository,
        directory: DirectoryRepository,
        notifier=None,
        clock=utcnow,
    ):
        self.bookings = bookings
        self.directory = directory
        self.notifier = notifier
        self.clock = clock

    # ---------- creación ----------

    async def create_booking(self, actor: Actor, payload: BookingCreate) -> Dict[str, Any]:
        start_at = as_utc(payload.start_at)
        end_at = as_utc(payload.end_at)
        if start_at >= end_at:
            raise ValidationError("end_at must be after start_at")
        if payload.deposit_amount > payload.price_total:
            raise ValidationError("deposit_amount cannot exceed price_total")
        if payload.provider_id == actor.uid:
            raise ValidationError("Providers cannot book their own services")

        provider = await self.directory.get_provider(payload.provider_id)
        if not provider:
            raise ValidationError(f"Unknown provider: {payload.provider_id}")
        service = await self.directory.get_service(payload.service_id)
        if not service or str(service.get("provider_id")) != payload.provider_id:
            raise ValidationError(f"Unknown service for this provider: {payload.service_id}")

        now = self.clock()
        doc = {
            "client_id": actor.uid,
            "provider_id": payload.provider_id,
            "service_id": payload.service_id,
            "start_at": start_at,
            "end_at": end_at,
            "booking_date": start_at.date().isoformat(),
            "status": S.pending.value,
            "price_total": round_money(payload.price_total),
            "deposit_amount": round_money(payload.deposit_amount),
            "address_text": payload.address_text,
            "lat": payload.lat,
            "lng": payload.lng,
            "notes": payload.notes,
            "created_at": now,
            "updated_at": now,
            "status_history": [],
        }
        created = await self.bookings.insert(doc)
        logger.info("Booking %s created by %s for provider %s", created["_id"], actor.uid, payload.provider_id)

        if self.notifier is not None:
            # El correo nunca bloquea ni revierte la reserva
            await self.notifier.booking_created(created)
        return created

    # ---------- lectura ----------

    async def get_booking(self, booking_id: str, actor: Actor) -> Dict[str, Any]:
        doc = await self.bookings.get(booking_id)
        if not doc:
            raise NotFoundError("Booking not found")
        if not actor.is_admin and actor.uid not in (doc.get("client_id"), doc.get("provider_id")):
            raise ForbiddenError("No access to this booking")
        return doc

    async def list_bookings(self, actor: Actor, status: Optional[BookingStatus] = None) -> List[Dict[str, Any]]:
        uid = None if actor.is_admin else actor.uid
        return await self.bookings.list_for_party(uid, status.value if status else None)

    # ---------- transiciones ----------

    def _check_actor(self, doc: Dict[str, Any], target: BookingStatus, actor: Actor) -> None:
        if actor.is_admin:
            return
        allowed: set = set()
        if actor.uid == doc.get("client_id"):
            allowed |= ROLE_TARGETS[CLIENT]
        if actor.uid == doc.get("provider_id"):
            allowed |= ROLE_TARGETS[PROVIDER]
        if not allowed:
            raise ForbiddenError("No access to this booking")
        if target not in allowed:
            raise ForbiddenError(f"Not allowed to set status {target.value}")

    async def transition(
        self,
        booking_id: str,
        target_status: Any,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc, _ = await self.apply_transition(booking_id, target_status, actor, reason)
        return doc

    async def apply_transition(
        self,
        booking_id: str,
        target_status: Any,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Igual que ``transition`` pero indica si esta llamada hizo la escritura.
        False cuando la reserva ya estaba en el destino (antes o por otro escritor).
        """
        target = _status(target_status)
        doc = await self.bookings.get(booking_id)
        if not doc:
            raise NotFoundError("Booking not found")

        self._check_actor(doc, target, actor)

        current = _status(doc.get("status"))
        if current == target:
            return doc, False
        if not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

        now: datetime = self.clock()
        entry = {"from": current.value, "to": target.value, "actor": actor.uid, "at": now}
        extra: Dict[str, Any] = {}
        if target == S.rejected:
            extra["rejection_reason"] = AUTO_REJECTED if actor.is_system else PROVIDER_REJECTED
        if reason and reason != extra.get("rejection_reason"):
            extra["status_reason"] = reason

        updated = await self.bookings.update_status(doc["_id"], current.value, target.value, entry, extra)
        if updated is None:
            # Otro escritor cambió el estado entre la lectura y la escritura
            fresh = await self.bookings.get(booking_id)
            if not fresh:
                raise NotFoundError("Booking not found")
            if fresh.get("status") == target.value:
                return fresh, False
            raise InvalidTransitionError(str(fresh.get("status")), target.value)

        logger.info("Booking %s: %s -> %s by %s", doc["_id"], current.value, target.value, actor.uid)
        return updated, True
