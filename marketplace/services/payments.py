# marketplace/services/payments.py
"""
Conciliación entre pasarelas, pagos y reservas.

Los adaptadores sólo traducen; aquí se decide qué se guarda. El resultado de la
pasarela se escribe primero en el pago y después, en una llamada explícita
(``settle_booking``), se mueve la reserva: nunca queda una reserva CONFIRMED
sin su pago CAPTURED.
"""
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from ..errors import (
    ConfigurationError,
    DuplicatePaymentError,
    ForbiddenError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..gateways.base import GatewayAdapter, GatewayIntent, GatewayResult
from ..repositories.bookings import BookingRepository
from ..repositories.payments import PaymentRepository
from ..schemas.booking import BookingStatus
from ..schemas.payment import PaymentStatus, PayType
from ..security import Actor
from ..utils import round_money, to_minor_units, utcnow
from .lifecycle import TERMINAL, BookingLifecycle

logger = logging.getLogger(__name__)

P = PaymentStatus

PAYMENT_EDGES: dict[PaymentStatus, frozenset] = {
    P.created: frozenset({P.authorized, P.captured, P.failed, P.voided}),
    P.authorized: frozenset({P.captured, P.voided, P.failed}),
    P.captured: frozenset({P.refunded}),
    P.failed: frozenset(),
    P.voided: frozenset(),
    P.refunded: frozenset(),
}

PAYABLE_BOOKING_STATUSES = {BookingStatus.pending.value, BookingStatus.accepted.value}


def compute_fees(amount: float, platform_rate: float, gateway_rate: float) -> Dict[str, float]:
    platform_fee = round_money(amount * platform_rate)
    gateway_fee = round_money(amount * gateway_rate)
    return {
        "platform_fee": platform_fee,
        "gateway_fee": gateway_fee,
        "provider_amount": round_money(amount - platform_fee - gateway_fee),
    }


def pay_type_for(booking: Dict[str, Any], amount_sar: Optional[float]) -> Optional[PayType]:
    """
    Tipo de pago que cubre ``amount_sar`` según los importes de la reserva.
    None si no llega ni al depósito (o no hay importe en SAR).
    """
    if amount_sar is None:
        return None
    amount = round_money(amount_sar)
    if amount >= round_money(booking.get("price_total") or 0):
        return PayType.full
    deposit = round_money(booking.get("deposit_amount") or 0)
    if deposit > 0 and amount >= deposit:
        return PayType.deposit
    return None


def refund_reference(payment: Dict[str, Any]) -> Optional[str]:
    """Id que cada pasarela espera para reembolsar."""
    if payment.get("gateway") == "PAYPAL":
        return payment.get("capture_id")
    return payment.get("order_id")


class PaymentReconciler:
    def __init__(
        self,
        payments: PaymentRepository,
        bookings: BookingRepository,
        lifecycle: BookingLifecycle,
        gateway_factory: Callable[[str], GatewayAdapter],
        *,
        platform_fee_rate: float = 0.0,
        gateway_fee_rates: Optional[Dict[str, float]] = None,
        clock=utcnow,
    ):
        self.payments = payments
        self.bookings = bookings
        self.lifecycle = lifecycle
        self.gateway_factory = gateway_factory
        self.platform_fee_rate = platform_fee_rate
        self.gateway_fee_rates = gateway_fee_rates or {}
        self.clock = clock

    # ---------- checkout ----------

    async def payable_booking(
        self,
        booking_id: Optional[str],
        actor: Actor,
        amount_sar: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Valida que la reserva exista, sea del cliente y admita pago. Antes de hablar con la pasarela.
        El importe lo manda el cliente: debe cubrir el depósito (o el total) sin pasarse del total.
        """
        if not booking_id:
            return None
        booking = await self.bookings.get(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if not actor.is_admin and booking.get("client_id") != actor.uid:
            raise ForbiddenError("Only the client can pay for this booking")
        if booking.get("status") not in PAYABLE_BOOKING_STATUSES:
            raise ValidationError(f"Booking is not payable in status {booking.get('status')}")
        if amount_sar is not None:
            price = round_money(booking.get("price_total") or 0)
            if round_money(amount_sar) > price:
                raise ValidationError(f"Amount {amount_sar} exceeds the booking total {price}")
            if pay_type_for(booking, amount_sar) is None:
                raise ValidationError(
                    f"Amount {amount_sar} does not cover the booking deposit {booking.get('deposit_amount')}"
                )
        return booking

    async def record_intent(
        self,
        intent: GatewayIntent,
        booking: Optional[Dict[str, Any]] = None,
        pay_type: Optional[PayType] = None,
    ) -> Dict[str, Any]:
        existing = await self.payments.find_by_order(intent.gateway, intent.reference)
        if existing:
            return existing

        if pay_type is None and booking:
            pay_type = pay_type_for(booking, intent.amount_sar)
        now = self.clock()
        doc = {
            "booking_id": booking["_id"] if booking else None,
            "client_id": booking.get("client_id") if booking else None,
            "provider_id": booking.get("provider_id") if booking else None,
            "pay_type": pay_type.value if pay_type else None,
            "gateway": intent.gateway,
            "status": P.created.value,
            "amount": intent.amount,
            "currency": intent.currency,
            "amount_sar": intent.amount_sar,
            "amount_usd": intent.amount_usd,
            "fx_rate": intent.fx_rate,
            "order_id": intent.reference,
            "authorization_id": None,
            "capture_id": None,
            "refund_id": None,
            "platform_fee": None,
            "gateway_fee": None,
            "provider_amount": None,
            "refunded_amount": 0.0,
            "created_at": now,
            "updated_at": now,
        }
        created = await self.payments.insert(doc)
        logger.info("Payment %s recorded (%s order %s)", created["_id"], intent.gateway, intent.reference)
        return created

    async def adopt_payment(
        self,
        gateway: str,
        order_id: str,
        booking_id: str,
        amount: float,
        currency: str,
    ) -> Optional[Dict[str, Any]]:
        """Registra un pago iniciado fuera del proxy (formulario de la pasarela) que llega por webhook."""
        booking = await self.bookings.get(booking_id)
        if not booking:
            logger.warning("Webhook for unknown booking %s (%s %s)", booking_id, gateway, order_id)
            return None
        intent = GatewayIntent(
            gateway=gateway,
            reference=order_id,
            amount=round_money(amount),
            currency=currency,
            amount_sar=round_money(amount) if currency.upper() == "SAR" else None,
        )
        return await self.record_intent(intent, booking)

    # ---------- resultados de pasarela ----------

    async def find_payment(self, result: GatewayResult) -> Optional[Dict[str, Any]]:
        payment = await self.payments.find_by_order(result.gateway, result.reference)
        if payment is None and result.authorization_id:
            payment = await self.payments.find_by_authorization(result.authorization_id)
        return payment

    async def apply_result(self, result: GatewayResult, extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        payment = await self.find_payment(result)
        if payment is None:
            logger.warning("No payment for %s reference %s", result.gateway, result.reference)
            return None
        return await self.advance(payment, result, extra)

    async def advance(
        self,
        payment: Dict[str, Any],
        result: GatewayResult,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        current = PaymentStatus(payment["status"])
        target = PaymentStatus(result.status)
        now = self.clock()

        ids = {
            key: value
            for key, value in (
                ("authorization_id", result.authorization_id),
                ("capture_id", result.capture_id),
                ("refund_id", result.refund_id),
            )
            if value and not payment.get(key)
        }

        if target == current:
            if ids:
                return await self.payments.set_fields(payment["_id"], {**ids, "updated_at": now})
            return payment

        if target not in PAYMENT_EDGES[current]:
            logger.warning(
                "Ignoring %s result for payment %s: %s -> %s",
                result.gateway, payment["_id"], current.value, target.value,
            )
            return payment

        fields: Dict[str, Any] = {"status": target.value, "updated_at": now, **ids}
        if result.message:
            fields["gateway_message"] = result.message
        if extra:
            fields.update(extra)

        if target == P.captured:
            expected = to_minor_units(payment["amount"])
            if result.amount_minor is not None and result.amount_minor != expected:
                raise GatewayError(
                    result.gateway,
                    f"Captured amount {result.amount_minor} does not match {expected}",
                    raw=result.raw,
                )
            if payment.get("booking_id") is not None:
                other = await self.payments.find_captured(payment["booking_id"], exclude_id=payment["_id"])
                if other:
                    raise DuplicatePaymentError(
                        f"Booking {payment['booking_id']} already has captured payment {other['_id']}"
                    )
            # Importes congelados a partir de aquí
            fields.update(compute_fees(
                float(payment["amount"]),
                self.platform_fee_rate,
                self.gateway_fee_rates.get(payment["gateway"], 0.0),
            ))
            fields["captured_at"] = now
        elif target == P.refunded:
            fields["refunded_at"] = now
            fields["refunded_amount"] = payment.get("amount")

        try:
            updated = await self.payments.update_status(payment["_id"], current.value, fields)
        except DuplicateKeyError:
            # Índice parcial one_captured_payment_per_booking: otra captura ganó la carrera
            raise DuplicatePaymentError(f"Booking {payment['booking_id']} already has a captured payment")
        if updated is None:
            fresh = await self.payments.get(payment["_id"])
            logger.info(
                "Payment %s changed concurrently (now %s); skipping %s",
                payment["_id"], (fresh or {}).get("status"), target.value,
            )
            return fresh or payment

        if updated.get("booking_id") is not None:
            await self.bookings.set_fields(updated["booking_id"], {"payment_status": target.value, "updated_at": now})
        logger.info("Payment %s: %s -> %s", payment["_id"], current.value, target.value)
        return updated

    async def settle_booking(self, payment: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Efecto explícito del pago sobre la reserva."""
        if not payment or payment.get("booking_id") is None:
            return None
        booking = await self.bookings.get(payment["booking_id"])
        if not booking:
            return None

        status = payment.get("status")
        target: Optional[BookingStatus] = None
        if status == P.captured.value and booking.get("status") == BookingStatus.accepted.value:
            if pay_type_for(booking, payment.get("amount_sar")) is None:
                logger.warning(
                    "Payment %s of %s SAR does not cover booking %s; not confirming",
                    payment["_id"], payment.get("amount_sar"), booking["_id"],
                )
                return booking
            target = BookingStatus.confirmed
        elif status == P.refunded.value and BookingStatus(booking.get("status")) not in TERMINAL:
            target = BookingStatus.refunded
        if target is None:
            return booking

        try:
            return await self.lifecycle.transition(
                str(booking["_id"]), target, Actor.system(), reason=f"payment_{status.lower()}"
            )
        except InvalidTransitionError as exc:
            logger.info("Booking %s not moved to %s: now %s", booking["_id"], target.value, exc.current_status)
            return await self.bookings.get(payment["booking_id"])

    async def handle_event(self, event_key: str, result: GatewayResult) -> Optional[Dict[str, Any]]:
        """
        Procesa un evento de webhook una sola vez. Un evento repetido no hace nada;
        si el procesamiento falla se libera la clave para poder reprocesarlo.
        """
        if not await self.payments.claim_event(event_key, result.raw):
            logger.info("Duplicate gateway event %s ignored", event_key)
            return None
        try:
            payment = await self.apply_result(result)
            await self.settle_booking(payment)
        except Exception:
            await self.payments.release_event(event_key)
            raise
        return payment

    # ---------- reembolsos ----------

    async def refund_payment(
        self,
        payment: Dict[str, Any],
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Optional[GatewayResult]]:
        """Devuelve el pago actualizado y la respuesta de la pasarela (None si ya estaba reembolsado)."""
        if payment.get("status") == P.refunded.value:
            return payment, None
        if payment.get("status") != P.captured.value:
            raise ValidationError(f"Only captured payments can be refunded (status {payment.get('status')})")
        reference = refund_reference(payment)
        if not reference:
            raise ValidationError(f"Payment {payment['_id']} has no gateway reference to refund")

        already = float(payment.get("refunded_amount") or 0)
        remaining = round_money(float(payment["amount"]) - already)
        if amount is not None and (amount <= 0 or amount > remaining):
            raise ValidationError(f"Refund amount must be between 0 and {remaining}")

        gateway = self.gateway_factory(payment["gateway"])
        # Tras un parcial se reembolsa sólo el resto
        if amount is None and already > 0:
            amount = remaining
        result = await gateway.refund(reference, amount)

        if amount is None or round_money(amount) >= remaining:
            extra = {"refund_reason": reason} if reason else None
            return await self.advance(payment, result, extra), result

        # Reembolso parcial: el pago sigue CAPTURED
        fields: Dict[str, Any] = {
            "refunded_amount": round_money(already + amount),
            "updated_at": self.clock(),
        }
        if result.refund_id:
            fields["refund_id"] = result.refund_id
        if reason:
            fields["refund_reason"] = reason
        logger.info("Partial refund of %s on payment %s", amount, payment["_id"])
        return await self.payments.set_fields(payment["_id"], fields), result

    async def refund_booking(self, booking_id: Any, reason: str) -> Dict[str, Any]:
        """Reembolso best effort de la reserva; informa en vez de lanzar."""
        payment = await self.payments.find_latest_settled(booking_id)
        if not payment:
            return {"success": False, "error": "No payment found"}
        if payment.get("status") == P.refunded.value:
            return {"success": True, "already_refunded": True}
        try:
            updated, _ = await self.refund_payment(payment, reason=reason)
        except (GatewayError, ConfigurationError, ValidationError) as exc:
            logger.error("Refund for booking %s failed: %s", booking_id, exc.message)
            return {"success": False, "error": exc.message}
        return {"success": True, "payment": updated}
