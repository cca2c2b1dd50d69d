"""
Configuración de pytest para tests
"""
import os

# Antes de importar la app: sin scheduler y con secreto conocido
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("APP_ENV", "test")

import json
from datetime import datetime, timedelta

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from marketplace.dependencies import build_services
from marketplace.schemas.booking import BookingCreate
from marketplace.security import CLIENT, PROVIDER, Actor, create_access_token
from marketplace.services.notifications import EmailSender

T0 = datetime(2026, 3, 1, 9, 0, 0)

CLIENT_ID = "client-1"
PROVIDER_ID = "provider-1"
OTHER_CLIENT_ID = "client-2"
SERVICE_ID = "svc-cleaning"


class FakeClock:
    """Reloj controlable; los servicios lo llaman como a ``utcnow``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Outbox:
    """Recoge los correos que saldrían hacia Resend."""

    def __init__(self):
        self.sent = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.sent.append({"to": body["to"][0], "subject": body["subject"], "text": body.get("text")})
        return httpx.Response(200, json={"id": f"email_{len(self.sent)}"})

    def to(self, address: str):
        return [m for m in self.sent if m["to"] == address]

    def with_subject(self, subject: str):
        return [m for m in self.sent if m["subject"] == subject]


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["marketplace_test"]
    await database.users.insert_many([
        {"_id": CLIENT_ID, "name": "Sara", "email": "sara@example.com", "roles": [CLIENT]},
        {"_id": OTHER_CLIENT_ID, "name": "Omar", "email": "omar@example.com", "roles": [CLIENT]},
        {"_id": PROVIDER_ID, "name": "Clean Co", "email": "provider@example.com", "roles": [PROVIDER]},
    ])
    await database.providers.insert_one({"_id": PROVIDER_ID, "display_name": "Clean Co"})
    await database.services.insert_one({"_id": SERVICE_ID, "provider_id": PROVIDER_ID, "title": "Home cleaning"})
    yield database


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def email_sender(outbox):
    return EmailSender("re_test", "Link <noreply@link-22.com>", transport=httpx.MockTransport(outbox.handler))


@pytest.fixture
def gateways():
    """Pasarelas por nombre; cada test registra las que necesita."""
    return {}


@pytest.fixture
def gateway_factory(gateways):
    def factory(name: str):
        return gateways[name.upper()]
    return factory


@pytest.fixture
def services(db, email_sender, gateway_factory, clock):
    return build_services(db, email_sender, gateway_factory, clock=clock)


@pytest.fixture
def client_actor():
    return Actor(uid=CLIENT_ID, roles=frozenset({CLIENT}))


@pytest.fixture
def provider_actor():
    return Actor(uid=PROVIDER_ID, roles=frozenset({PROVIDER}))


def booking_payload(**overrides) -> BookingCreate:
    data = {
        "provider_id": PROVIDER_ID,
        "service_id": SERVICE_ID,
        "start_at": T0 + timedelta(days=2),
        "end_at": T0 + timedelta(days=2, hours=3),
        "price_total": 250.0,
        "deposit_amount": 50.0,
        "address_text": "Riyadh, Al Olaya",
    }
    data.update(overrides)
    return BookingCreate(**data)


@pytest.fixture
def new_booking(services, client_actor):
    async def _create(**overrides):
        return await services["lifecycle"].create_booking(client_actor, booking_payload(**overrides))
    return _create


def auth_headers(uid: str, *roles: str) -> dict:
    token = create_access_token(uid, roles or (CLIENT,))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app(db, email_sender, gateway_factory):
    from marketplace.dependencies import get_email_sender, get_gateway_factory
    from marketplace.db import get_db
    from marketplace.main import app as fastapi_app

    # Deshabilitar rate limiting en la app para tests
    fastapi_app.state.limiter = None
    fastapi_app.dependency_overrides[get_db] = lambda: db
    fastapi_app.dependency_overrides[get_email_sender] = lambda: email_sender
    fastapi_app.dependency_overrides[get_gateway_factory] = lambda: gateway_factory
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def api(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
