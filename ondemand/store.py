# ondemand/store.py
"""
Persistencia de reservas.

``BookingStore`` es el puerto que usa el ciclo de vida; cada escritura es un
compare-and-swap sobre el campo ``version`` del documento, de modo que dos
peticiones que leyeron la misma versión nunca pueden aplicar ambas su cambio.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import copy
from datetime import datetime
import itertools
import logging
from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .errors import Conflict, NotFound
from .schemas.booking import Booking, BookingStatus
from .utils import to_id, to_plain

logger = logging.getLogger(__name__)


def _to_document(booking: Booking) -> dict[str, Any]:
    return to_plain(booking.model_dump(exclude={"id"}))


def _from_document(doc: dict[str, Any]) -> Booking:
    return Booking.model_validate(to_id(doc))


def _not_found(booking_id: str) -> NotFound:
    return NotFound("Reserva no encontrada", details={"booking_id": booking_id})


def _conflict(booking: Booking, expected_version: int) -> Conflict:
    logger.warning(
        f"Conflicto de versión en reserva {booking.booking_id}: esperada v{expected_version}"
    )
    return Conflict(
        "La reserva fue modificada por otra petición; vuelve a cargarla e inténtalo de nuevo",
        details={"booking_id": booking.id, "expected_version": expected_version},
    )


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> dict[str, datetime]:
    """Filtro Mongo ``{$gte, $lte}`` con los extremos que vengan informados."""
    cond: dict[str, datetime] = {}
    if start is not None:
        cond["$gte"] = start
    if end is not None:
        cond["$lte"] = end
    return cond


def _in_range(value: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    return (start is None or value >= start) and (end is None or value <= end)


class BookingStore(ABC):
    @abstractmethod
    async def next_sequence(self) -> int:
        """Siguiente número para el id legible (OD-BK-000001...)."""
        raise NotImplementedError

    @abstractmethod
    async def create(self, booking: Booking) -> Booking:
        raise NotImplementedError

    @abstractmethod
    async def load(self, booking_id: str) -> Booking:
        raise NotImplementedError

    @abstractmethod
    async def load_by_reference(self, reference: str, phone: str) -> Booking:
        raise NotImplementedError

    @abstractmethod
    async def save(self, booking: Booking, expected_version: int) -> Booking:
        """Guarda si la versión almacenada sigue siendo ``expected_version``; si no, ``Conflict``."""
        raise NotImplementedError

    @abstractmethod
    async def list_for_customer(self, user_id: str, status: Optional[BookingStatus] = None) -> list[Booking]:
        raise NotImplementedError

    @abstractmethod
    async def list_for_provider(self, provider_id: str, status: Optional[BookingStatus] = None) -> list[Booking]:
        raise NotImplementedError

    @abstractmethod
    async def list_all(
        self,
        status: Optional[BookingStatus] = None,
        provider_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> tuple[list[Booking], int]:
        """Listado paginado; ``from_date``/``to_date`` filtran por ``scheduled_date``."""
        raise NotImplementedError

    @abstractmethod
    async def count_by_status(
        self, created_from: Optional[datetime] = None, created_to: Optional[datetime] = None
    ) -> dict[str, int]:
        raise NotImplementedError

    @abstractmethod
    async def completed_revenue(
        self, created_from: Optional[datetime] = None, created_to: Optional[datetime] = None
    ) -> float:
        """Suma de ``pricing.total`` de las reservas completadas."""
        raise NotImplementedError

    @abstractmethod
    async def count_scheduled_between(self, start: datetime, end: datetime) -> int:
        """Reservas con ``start <= scheduled_date < end``."""
        raise NotImplementedError


class MongoBookingStore(BookingStore):
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    async def next_sequence(self) -> int:
        counter = await self._db.counters.find_one_and_update(
            {"_id": "bookings"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def create(self, booking: Booking) -> Booking:
        doc = _to_document(booking)
        res = await self._db.bookings.insert_one(doc)
        return booking.model_copy(update={"id": str(res.inserted_id)})

    async def load(self, booking_id: str) -> Booking:
        if not ObjectId.is_valid(booking_id):
            raise _not_found(booking_id)
        doc = await self._db.bookings.find_one({"_id": ObjectId(booking_id)})
        if not doc:
            raise _not_found(booking_id)
        return _from_document(doc)

    async def load_by_reference(self, reference: str, phone: str) -> Booking:
        doc = await self._db.bookings.find_one({"booking_id": reference, "customer.phone": phone})
        if not doc:
            raise NotFound(
                "Reserva no encontrada. Revisa el ID de reserva y el teléfono.",
                details={"booking_id": reference},
            )
        return _from_document(doc)

    async def save(self, booking: Booking, expected_version: int) -> Booking:
        oid = ObjectId(booking.id)
        doc = _to_document(booking)
        doc["version"] = expected_version + 1
        res = await self._db.bookings.replace_one({"_id": oid, "version": expected_version}, doc)
        if res.matched_count == 0:
            if not await self._db.bookings.find_one({"_id": oid}, {"_id": 1}):
                raise _not_found(booking.id)
            raise _conflict(booking, expected_version)
        return booking.model_copy(update={"version": expected_version + 1})

    async def _find(self, query: dict, sort: list, skip: int = 0, limit: int = 500) -> list[Booking]:
        docs = await self._db.bookings.find(query, sort=sort, skip=skip, limit=limit).to_list(length=limit)
        return [_from_document(d) for d in docs]

    async def list_for_customer(self, user_id, status=None):
        query: dict[str, Any] = {"customer.user_id": user_id}
        if status:
            query["status"] = status.value
        return await self._find(query, [("created_at", -1)])

    async def list_for_provider(self, provider_id, status=None):
        query: dict[str, Any] = {"service_provider": provider_id}
        if status:
            query["status"] = status.value
        return await self._find(query, [("scheduled_date", -1)])

    async def list_all(self, status=None, provider_id=None, from_date=None, to_date=None, skip=0, limit=10):
        query: dict[str, Any] = {}
        if status:
            query["status"] = status.value
        if provider_id:
            query["service_provider"] = provider_id
        if from_date or to_date:
            query["scheduled_date"] = _date_range(from_date, to_date)
        items = await self._find(query, [("created_at", -1)], skip=skip, limit=limit)
        total = await self._db.bookings.count_documents(query)
        return items, total

    def _created_match(self, created_from, created_to) -> dict[str, Any]:
        if created_from or created_to:
            return {"created_at": _date_range(created_from, created_to)}
        return {}

    async def count_by_status(self, created_from=None, created_to=None):
        pipeline = [
            {"$match": self._created_match(created_from, created_to)},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        rows = await self._db.bookings.aggregate(pipeline).to_list(None)
        return {row["_id"]: row["count"] for row in rows}

    async def completed_revenue(self, created_from=None, created_to=None):
        match = {**self._created_match(created_from, created_to), "status": BookingStatus.completed.value}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total_revenue": {"$sum": "$pricing.total"}}},
        ]
        rows = await self._db.bookings.aggregate(pipeline).to_list(None)
        return float(rows[0]["total_revenue"]) if rows else 0.0

    async def count_scheduled_between(self, start, end):
        return await self._db.bookings.count_documents({"scheduled_date": {"$gte": start, "$lt": end}})


class MemoryBookingStore(BookingStore):
    """Implementación en memoria, con la misma semántica de versión que Mongo."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()

    async def next_sequence(self) -> int:
        return next(self._seq)

    async def create(self, booking: Booking) -> Booking:
        created = booking.model_copy(update={"id": str(ObjectId())})
        async with self._lock:
            self._docs[created.id] = copy.deepcopy(created.model_dump())
        return created

    async def load(self, booking_id: str) -> Booking:
        doc = self._docs.get(booking_id)
        if doc is None:
            raise _not_found(booking_id)
        return Booking.model_validate(copy.deepcopy(doc))

    async def load_by_reference(self, reference: str, phone: str) -> Booking:
        for doc in self._docs.values():
            if doc["booking_id"] == reference and doc["customer"]["phone"] == phone:
                return Booking.model_validate(copy.deepcopy(doc))
        raise NotFound(
            "Reserva no encontrada. Revisa el ID de reserva y el teléfono.",
            details={"booking_id": reference},
        )

    async def save(self, booking: Booking, expected_version: int) -> Booking:
        async with self._lock:
            current = self._docs.get(booking.id)
            if current is None:
                raise _not_found(booking.id)
            if current["version"] != expected_version:
                raise _conflict(booking, expected_version)
            saved = booking.model_copy(update={"version": expected_version + 1})
            self._docs[booking.id] = copy.deepcopy(saved.model_dump())
        return saved

    def _select(self, predicate) -> list[Booking]:
        return [Booking.model_validate(copy.deepcopy(d)) for d in self._docs.values() if predicate(d)]

    async def list_for_customer(self, user_id, status=None):
        items = self._select(
            lambda d: d["customer"]["user_id"] == user_id and (status is None or d["status"] == status)
        )
        return sorted(items, key=lambda b: b.created_at, reverse=True)

    async def list_for_provider(self, provider_id, status=None):
        items = self._select(
            lambda d: d["service_provider"] == provider_id and (status is None or d["status"] == status)
        )
        return sorted(items, key=lambda b: b.scheduled_date, reverse=True)

    async def list_all(self, status=None, provider_id=None, from_date=None, to_date=None, skip=0, limit=10):
        items = self._select(
            lambda d: (status is None or d["status"] == status)
            and (provider_id is None or d["service_provider"] == provider_id)
            and _in_range(d["scheduled_date"], from_date, to_date)
        )
        items.sort(key=lambda b: b.created_at, reverse=True)
        return items[skip:skip + limit], len(items)

    async def count_by_status(self, created_from=None, created_to=None):
        counts: dict[str, int] = {}
        for doc in self._docs.values():
            if not _in_range(doc["created_at"], created_from, created_to):
                continue
            key = to_plain(doc["status"])
            counts[key] = counts.get(key, 0) + 1
        return counts

    async def completed_revenue(self, created_from=None, created_to=None):
        return float(sum(
            doc["pricing"]["total"]
            for doc in self._docs.values()
            if doc["status"] == BookingStatus.completed
            and _in_range(doc["created_at"], created_from, created_to)
        ))

    async def count_scheduled_between(self, start, end):
        return sum(1 for doc in self._docs.values() if start <= doc["scheduled_date"] < end)
