# ondemand/dependencies.py
from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from .config import get_settings
from .db import get_db
from .lifecycle import BookingLifecycleManager
from .notifications import NotificationSender, build_notification_sender
from .store import BookingStore, MongoBookingStore

_notification_sender: NotificationSender | None = None


async def get_booking_store(db: AsyncIOMotorDatabase = Depends(get_db)) -> BookingStore:
    return MongoBookingStore(db)


def get_notification_sender() -> NotificationSender:
    global _notification_sender
    if _notification_sender is None:
        _notification_sender = build_notification_sender(get_settings().notification_channel)
    return _notification_sender


async def get_lifecycle_manager(
    store: BookingStore = Depends(get_booking_store),
    notifier: NotificationSender = Depends(get_notification_sender),
) -> BookingLifecycleManager:
    return BookingLifecycleManager(store, notifier, settings=get_settings())
