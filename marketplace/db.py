from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from .config import get_settings

_settings = get_settings()
_client: AsyncIOMotorClient | None = None
_db: AsyncIOMotorDatabase | None = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(_settings.mongodb_uri)
        _db = _client[_settings.db_name]
        await _db.bookings.create_index([("client_id", 1), ("created_at", -1)])
        await _db.bookings.create_index([("provider_id", 1), ("created_at", -1)])
        # Barrido de auto-rechazo: status == PENDING y created_at <= cutoff
        await _db.bookings.create_index([("status", 1), ("created_at", 1)])
        await _db.payments.create_index([("booking_id", 1)])
        await _db.payments.create_index([("gateway", 1), ("order_id", 1)], unique=True)
        # Un único pago CAPTURED por reserva
        await _db.payments.create_index(
            [("booking_id", 1)],
            name="one_captured_payment_per_booking",
            unique=True,
            partialFilterExpression={"status": "CAPTURED"},
        )
        await _db.webhook_events.create_index([("received_at", 1)], expireAfterSeconds=30 * 24 * 3600)
    return _db

def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None
