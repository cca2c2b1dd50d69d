# marketplace/dependencies.py
"""
Composición de repositorios, servicios y pasarelas para los routers.

Los tests sustituyen ``get_db``, ``get_email_sender``, ``get_fx_provider`` o
``get_gateway_factory`` con ``app.dependency_overrides``.
"""
from typing import Callable

from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from .config import get_settings
from .db import get_db
from .errors import ValidationError
from .gateways.base import GatewayAdapter
from .gateways.fx import FxRateProvider, HttpFxRateProvider
from .gateways.moyasar import MoyasarGateway
from .gateways.paypal import PayPalGateway
from .gateways.stripe_gateway import StripeGateway
from .repositories.bookings import BookingRepository
from .repositories.directory import DirectoryRepository
from .repositories.payments import PaymentRepository
from .services.auto_reject import AutoRejectSweep
from .services.lifecycle import BookingLifecycle
from .services.notifications import EmailSender, NotificationDispatcher
from .services.payments import PaymentReconciler
from .utils import utcnow

GatewayFactory = Callable[[str], GatewayAdapter]


def get_email_sender() -> EmailSender:
    settings = get_settings()
    return EmailSender(settings.resend_api_key, settings.email_from, timeout=settings.gateway_timeout)


def get_fx_provider() -> FxRateProvider:
    return HttpFxRateProvider(timeout=get_settings().gateway_timeout)


def build_gateway_factory(fx: FxRateProvider) -> GatewayFactory:
    """Las pasarelas se construyen al usarse: una sin credenciales sólo falla en sus rutas."""
    settings = get_settings()

    def factory(name: str) -> GatewayAdapter:
        name = name.upper()
        if name == "MOYASAR":
            return MoyasarGateway(
                secret_key=settings.moyasar_secret_key,
                callback_url=settings.moyasar_callback_url,
                timeout=settings.gateway_timeout,
            )
        if name == "PAYPAL":
            return PayPalGateway(
                client_id=settings.paypal_client_id,
                client_secret=settings.paypal_client_secret,
                fx=fx,
                base_url=settings.paypal_api_base,
                timeout=settings.gateway_timeout,
            )
        if name == "STRIPE":
            return StripeGateway(
                secret_key=settings.stripe_secret_key,
                webhook_secret=settings.stripe_webhook_secret,
            )
        raise ValidationError(f"Unknown gateway: {name}")

    return factory


def get_gateway_factory(fx: FxRateProvider = Depends(get_fx_provider)) -> GatewayFactory:
    return build_gateway_factory(fx)


def build_services(
    db: AsyncIOMotorDatabase,
    sender: EmailSender,
    gateway_factory: GatewayFactory,
    clock=utcnow,
) -> dict:
    """Grafo completo de servicios sobre una base de datos; lo usan las rutas y el scheduler."""
    settings = get_settings()
    bookings = BookingRepository(db)
    payments = PaymentRepository(db)
    directory = DirectoryRepository(db)
    notifier = NotificationDispatcher(sender, directory, settings.client_app_url)
    lifecycle = BookingLifecycle(bookings, directory, notifier, clock=clock)
    reconciler = PaymentReconciler(
        payments,
        bookings,
        lifecycle,
        gateway_factory,
        platform_fee_rate=settings.platform_fee_rate,
        gateway_fee_rates={g: settings.gateway_fee_rate(g) for g in ("MOYASAR", "PAYPAL", "STRIPE")},
        clock=clock,
    )
    sweep = AutoRejectSweep(
        lifecycle,
        bookings,
        reconciler,
        notifier,
        after_hours=settings.auto_reject_after_hours,
        clock=clock,
    )
    return {
        "bookings": bookings,
        "payments": payments,
        "directory": directory,
        "notifier": notifier,
        "lifecycle": lifecycle,
        "reconciler": reconciler,
        "sweep": sweep,
    }


async def get_services(
    db: AsyncIOMotorDatabase = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
) -> dict:
    return build_services(db, sender, gateway_factory)
