# marketplace/services/auto_reject.py
"""
Auto-rechazo de reservas que el proveedor no atendió a tiempo.

Cada reserva se procesa aislada: un fallo se registra y el barrido sigue.
Es idempotente; una reserva ya movida por otro escritor cuenta como omitida.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from ..errors import InvalidTransitionError, NotFoundError
from ..repositories.bookings import BookingRepository
from ..schemas.booking import BookingStatus
from ..security import Actor
from ..utils import utcnow
from .lifecycle import AUTO_REJECTED, BookingLifecycle

logger = logging.getLogger(__name__)

AUTO_REJECT_REASON = AUTO_REJECTED


@dataclass
class SweepResult:
    rejected: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "rejected": len(self.rejected),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class AutoRejectSweep:
    def __init__(
        self,
        lifecycle: BookingLifecycle,
        bookings: BookingRepository,
        reconciler=None,
        notifier=None,
        *,
        after_hours: int = 24,
        clock=utcnow,
    ):
        self.lifecycle = lifecycle
        self.bookings = bookings
        self.reconciler = reconciler
        self.notifier = notifier
        self.after = timedelta(hours=after_hours)
        self.clock = clock

    async def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.clock()
        cutoff = now - self.after
        result = SweepResult()

        stale = await self.bookings.find_stale_pending(cutoff)
        if not stale:
            logger.info("Auto-reject: no pending bookings created before %s", cutoff.isoformat())
            return result

        logger.info("Auto-reject: %d pending bookings created before %s", len(stale), cutoff.isoformat())
        for booking in stale:
            booking_id = str(booking["_id"])
            try:
                rejected, changed = await self.lifecycle.apply_transition(
                    booking_id, BookingStatus.rejected, Actor.system(), reason=AUTO_REJECT_REASON
                )
            except (InvalidTransitionError, NotFoundError) as exc:
                logger.info("Auto-reject: booking %s skipped (%s)", booking_id, exc.message)
                result.skipped.append(booking_id)
                continue
            except Exception:
                logger.exception("Auto-reject: booking %s failed", booking_id)
                result.failed.append(booking_id)
                continue

            if not changed:
                # Otro barrido u otro escritor la rechazó primero; ya notificó él
                result.skipped.append(booking_id)
                continue

            result.rejected.append(booking_id)
            await self._after_reject(rejected)

        logger.info("Auto-reject finished: %s", result.as_dict())
        return result

    async def _after_reject(self, booking: dict) -> None:
        refunded: Optional[bool] = None
        if self.reconciler is not None:
            try:
                outcome = await self.reconciler.refund_booking(booking["_id"], AUTO_REJECT_REASON)
            except Exception:
                logger.exception("Auto-reject: refund for booking %s failed", booking["_id"])
                outcome = {"success": False}
            if outcome.get("error") != "No payment found":
                refunded = bool(outcome.get("success"))

        if self.notifier is not None:
            await self.notifier.booking_auto_rejected(booking, refunded=refunded)
