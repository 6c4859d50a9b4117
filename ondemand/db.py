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
        await _db.bookings.create_index("booking_id", unique=True)
        await _db.bookings.create_index([("customer.user_id", 1), ("scheduled_date", -1)])
        await _db.bookings.create_index([("service_provider", 1), ("status", 1)])
        await _db.bookings.create_index([("status", 1), ("scheduled_date", 1)])
        # Búsqueda pública por id legible + teléfono
        await _db.bookings.create_index([("booking_id", 1), ("customer.phone", 1)])
    return _db
