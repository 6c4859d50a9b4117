# ondemand/lifecycle.py
"""
Ciclo de vida de una reserva bajo demanda.

La tabla ``TRANSITIONS`` es la única fuente de verdad de qué estado puede
seguir a cuál y qué rol puede pedirlo. El paso ``work_completed → completed``
solo se aplica a través de la verificación del OTP de finalización, que el
cliente recibe cuando el proveedor marca el trabajo como terminado.

Todas las operaciones que mutan son lectura-modificación-escritura contra
``BookingStore.save(booking, expected_version)``: si otra petición escribió
antes, la nuestra falla con ``Conflict`` y el llamante debe recargar.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
import secrets
from typing import Callable, Optional

from .config import Settings, get_settings
from .errors import (
    BookingError,
    Forbidden,
    InvalidOtp,
    InvalidTransition,
    NotFound,
    OtpAttemptsExhausted,
    OtpExpired,
)
from .notifications import NotificationSender
from .schemas.booking import (
    Actor,
    ActorRole,
    Booking,
    BookingCreate,
    BookingStats,
    BookingStatus,
    Cancellation,
    CompletionOtp,
    CustomerInfo,
    Pricing,
    RatingEntry,
    StatusHistoryEntry,
    TERMINAL_STATUSES,
    WorkDuration,
)
from .store import BookingStore

logger = logging.getLogger(__name__)

S = BookingStatus
R = ActorRole

# estado actual -> {estado pedido: roles que pueden pedirlo}
# "provider" significa siempre el proveedor asignado a la reserva.
TRANSITIONS: dict[BookingStatus, dict[BookingStatus, frozenset[ActorRole]]] = {
    S.pending: {
        S.confirmed: frozenset({R.admin}),
        S.cancelled_by_customer: frozenset({R.customer}),
        S.cancelled_by_admin: frozenset({R.admin}),
    },
    S.confirmed: {
        S.provider_on_way: frozenset({R.provider}),
        S.cancelled_by_provider: frozenset({R.provider}),
        S.cancelled_by_customer: frozenset({R.customer}),
    },
    S.provider_on_way: {
        S.in_progress: frozenset({R.provider}),
        S.cancelled_by_provider: frozenset({R.provider}),
    },
    S.in_progress: {
        S.work_completed: frozenset({R.provider}),
    },
    S.work_completed: {
        S.completed: frozenset({R.provider}),
    },
}

OTP_GATED: frozenset[tuple[BookingStatus, BookingStatus]] = frozenset({
    (S.work_completed, S.completed),
})

CANCELLED_BY: dict[BookingStatus, ActorRole] = {
    S.cancelled_by_customer: R.customer,
    S.cancelled_by_provider: R.provider,
    S.cancelled_by_admin: R.admin,
}

ACTIVE_STATUSES = frozenset({S.pending, S.confirmed, S.provider_on_way, S.in_progress, S.work_completed})


def allowed_successors(status: BookingStatus) -> list[str]:
    return [target.value for target in TRANSITIONS.get(status, {})]


def generate_otp(length: int) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def is_party(booking: Booking, actor: Actor) -> bool:
    """True si el actor es el cliente dueño, el proveedor asignado o un admin."""
    if actor.role == R.admin:
        return True
    if actor.role == R.customer:
        return booking.customer.user_id is not None and booking.customer.user_id == actor.id
    return booking.service_provider is not None and booking.service_provider == actor.id


def _forbidden(booking: Booking, actor: Actor, message: str) -> Forbidden:
    return Forbidden(message, details={
        "booking_id": booking.id,
        "current_status": booking.status.value,
        "actor": {"role": actor.role.value, "id": actor.id},
    })


class BookingLifecycleManager:
    def __init__(
        self,
        store: BookingStore,
        notifier: NotificationSender,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        otp_generator: Callable[[int], str] = generate_otp,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock
        self._generate_otp = otp_generator
        self._dispatches: set[asyncio.Task] = set()

    # ---------- Validaciones ----------

    def _ensure_party(self, booking: Booking, actor: Actor) -> None:
        if not is_party(booking, actor):
            raise _forbidden(booking, actor, "Sin acceso a esta reserva")

    def _ensure_edge(self, booking: Booking, requested: BookingStatus, actor: Actor) -> None:
        edges = TRANSITIONS.get(booking.status, {})
        if requested not in edges:
            raise InvalidTransition(
                booking.id, booking.status.value, requested.value, allowed_successors(booking.status)
            )
        if actor.role not in edges[requested]:
            raise _forbidden(
                booking, actor, f"El rol {actor.role.value} no puede pasar la reserva a {requested.value}"
            )

    # ---------- Mutaciones puras ----------

    def _apply(
        self,
        booking: Booking,
        target: BookingStatus,
        actor: Actor,
        now: datetime,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        entry = StatusHistoryEntry(status=target, timestamp=now, actor=actor, notes=notes)
        update: dict = {
            "status": target,
            "updated_at": now,
            "status_history": [*booking.status_history, entry],
        }

        duration = booking.work_duration
        if target == S.in_progress and duration.started_at is None:
            update["work_duration"] = duration.model_copy(update={"started_at": now})
        elif target == S.work_completed:
            minutes = None
            if duration.started_at is not None:
                minutes = round((now - duration.started_at).total_seconds() / 60)
            update["work_duration"] = WorkDuration(
                started_at=duration.started_at, ended_at=now, actual_minutes=minutes
            )
        elif target == S.completed:
            update["completion_otp"] = None
        elif target in CANCELLED_BY:
            update["cancellation"] = Cancellation(
                cancelled_by=CANCELLED_BY[target],
                reason=reason,
                cancelled_at=now,
                refund_eligible=booking.status != S.provider_on_way,
            )

        return booking.model_copy(update=update)

    def _issue_otp(self, booking: Booking, now: datetime) -> tuple[Booking, str]:
        code = self._generate_otp(self._settings.completion_otp_length)
        otp = CompletionOtp(
            code=code,
            issued_at=now,
            expires_at=now + timedelta(minutes=self._settings.completion_otp_ttl_minutes),
            attempts_remaining=self._settings.completion_otp_max_attempts,
        )
        return booking.model_copy(update={"completion_otp": otp, "updated_at": now}), code

    def _dispatch_otp(self, booking: Booking, code: str) -> None:
        # El envío corre fuera de la petición; la transición ya está persistida
        task = asyncio.create_task(self._send_otp(booking, code))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    async def _send_otp(self, booking: Booking, code: str) -> None:
        timeout = self._settings.notification_timeout_seconds
        try:
            await asyncio.wait_for(self._notifier.send_otp(booking.customer, code, booking), timeout)
        except asyncio.TimeoutError:
            logger.error(f"No se pudo enviar el OTP de la reserva {booking.booking_id}: sin respuesta en {timeout}s")
        except Exception as e:
            logger.error(f"No se pudo enviar el OTP de la reserva {booking.booking_id}: {e}", exc_info=True)

    async def drain_notifications(self) -> None:
        """Espera a que terminen los envíos de OTP pendientes (apagado y tests)."""
        if self._dispatches:
            await asyncio.gather(*self._dispatches)

    # ---------- Operaciones ----------

    async def create_booking(self, payload: BookingCreate, actor: Optional[Actor] = None) -> Booking:
        if actor is not None and actor.role == R.provider:
            raise Forbidden("Un proveedor no puede crear reservas", details={"actor": actor.model_dump(mode="json")})

        now = self._clock()
        user_id = actor.id if actor is not None and actor.role == R.customer else None
        creator = actor or Actor(role=R.customer, id="guest")
        seq = await self._store.next_sequence()
        service_charge = round(payload.pricing.service_charge, 2)
        tax = round(payload.pricing.tax, 2)

        booking = Booking(
            booking_id=f"{self._settings.booking_id_prefix}{seq:06d}",
            customer=CustomerInfo(user_id=user_id, **payload.customer.model_dump()),
            service_id=payload.service_id,
            status=S.pending,
            scheduled_date=payload.scheduled_date,
            time_slot=payload.time_slot,
            service_address=payload.service_address,
            service_details=payload.service_details,
            pricing=Pricing(service_charge=service_charge, tax=tax, total=round(service_charge + tax, 2)),
            status_history=[StatusHistoryEntry(status=S.pending, timestamp=now, actor=creator)],
            created_at=now,
            updated_at=now,
        )
        created = await self._store.create(booking)
        logger.info(f"Reserva {created.booking_id} creada ({created.id})")
        return created

    async def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = await self._store.load(booking_id)
        self._ensure_party(booking, actor)
        return booking

    async def track_booking(self, reference: str, phone: str) -> Booking:
        return await self._store.load_by_reference(reference, phone)

    async def list_my_bookings(self, actor: Actor, status: Optional[BookingStatus] = None) -> list[Booking]:
        if actor.role == R.customer:
            return await self._store.list_for_customer(actor.id, status)
        if actor.role == R.provider:
            return await self._store.list_for_provider(actor.id, status)
        items, _ = await self._store.list_all(status, skip=0, limit=100)
        return items

    async def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        limit: int = 10,
        provider_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> tuple[list[Booking], int]:
        """Listado de admin; las fechas acotan ``scheduled_date`` (ambos extremos incluidos)."""
        if actor.role != R.admin:
            raise Forbidden("Solo un admin puede listar todas las reservas")
        return await self._store.list_all(
            status,
            provider_id=provider_id,
            from_date=from_date,
            to_date=to_date,
            skip=(page - 1) * limit,
            limit=limit,
        )

    async def booking_stats(
        self, actor: Actor, from_date: Optional[datetime] = None, to_date: Optional[datetime] = None
    ) -> BookingStats:
        """
        Resumen para el panel de admin. El rango acota ``created_at``;
        ``today`` cuenta las reservas programadas para hoy, sin rango.
        """
        if actor.role != R.admin:
            raise Forbidden("Solo un admin puede ver las estadísticas")
        counts = await self._store.count_by_status(from_date, to_date)
        by_status = {s.value: counts.get(s.value, 0) for s in BookingStatus}

        day_start = self._clock().replace(hour=0, minute=0, second=0, microsecond=0)
        today = await self._store.count_scheduled_between(day_start, day_start + timedelta(days=1))
        revenue = await self._store.completed_revenue(from_date, to_date)

        return BookingStats(
            total=sum(by_status.values()),
            by_status=by_status,
            cancelled=sum(by_status[s.value] for s in CANCELLED_BY),
            active=sum(by_status[s.value] for s in ACTIVE_STATUSES),
            today=today,
            revenue=round(revenue, 2),
        )

    async def transition(
        self,
        booking_id: str,
        requested: BookingStatus,
        actor: Actor,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        booking = await self._store.load(booking_id)
        # Un estado terminal rechaza cualquier petición, venga de quien venga
        if booking.status in TERMINAL_STATUSES:
            raise InvalidTransition(booking.id, booking.status.value, requested.value, [])
        self._ensure_party(booking, actor)
        self._ensure_edge(booking, requested, actor)
        if (booking.status, requested) in OTP_GATED:
            raise InvalidTransition(
                booking.id,
                booking.status.value,
                requested.value,
                allowed_successors(booking.status),
                message="La reserva solo se completa verificando el OTP de finalización",
            )

        expected = booking.version
        now = self._clock()
        updated = self._apply(booking, requested, actor, now, notes=notes, reason=reason)
        code = None
        if requested == S.work_completed:
            updated, code = self._issue_otp(updated, now)

        saved = await self._store.save(updated, expected)
        logger.info(
            f"Reserva {saved.booking_id}: {booking.status.value} → {requested.value} "
            f"({actor.role.value} {actor.id})"
        )
        if code is not None:
            self._dispatch_otp(saved, code)
        return saved

    async def assign_provider(self, booking_id: str, provider_id: str, actor: Actor) -> Booking:
        booking = await self._store.load(booking_id)
        if actor.role != R.admin:
            raise _forbidden(booking, actor, "Solo un admin puede asignar proveedor")

        expected = booking.version
        now = self._clock()
        if booking.status == S.pending:
            self._ensure_edge(booking, S.confirmed, actor)
            updated = self._apply(
                booking.model_copy(update={"service_provider": provider_id}),
                S.confirmed, actor, now, notes=f"Proveedor {provider_id} asignado",
            )
        elif booking.status == S.confirmed:
            # Reasignación antes de que el proveedor salga: no es una transición
            updated = booking.model_copy(update={"service_provider": provider_id, "updated_at": now})
        else:
            raise InvalidTransition(
                booking.id, booking.status.value, S.confirmed.value, allowed_successors(booking.status),
                message="Solo se puede asignar proveedor a reservas pendientes o confirmadas",
            )

        saved = await self._store.save(updated, expected)
        logger.info(f"Reserva {saved.booking_id}: proveedor {provider_id} asignado")
        return saved

    async def request_completion_otp(self, booking_id: str, actor: Actor) -> Booking:
        booking = await self._store.load(booking_id)
        self._ensure_party(booking, actor)
        if actor.role not in (R.provider, R.admin):
            raise _forbidden(booking, actor, "Solo el proveedor asignado puede pedir el OTP de finalización")
        if booking.status != S.work_completed:
            raise InvalidTransition(
                booking.id, booking.status.value, S.work_completed.value, allowed_successors(booking.status),
                message="El OTP solo se puede pedir para reservas con el trabajo terminado",
            )

        expected = booking.version
        updated, code = self._issue_otp(booking, self._clock())
        saved = await self._store.save(updated, expected)
        logger.info(f"OTP de finalización reemitido para reserva {saved.booking_id}")
        self._dispatch_otp(saved, code)
        return saved

    async def verify_completion_otp(self, booking_id: str, code: str, actor: Actor) -> Booking:
        booking = await self._store.load(booking_id)
        self._ensure_party(booking, actor)
        if actor.role != R.provider:
            raise _forbidden(booking, actor, "Solo el proveedor asignado puede verificar el OTP de finalización")

        otp = booking.completion_otp
        if booking.status != S.work_completed or otp is None:
            raise NotFound(
                "No hay un OTP de finalización activo para esta reserva",
                details={"booking_id": booking.id, "current_status": booking.status.value},
            )

        now = self._clock()
        details = {"booking_id": booking.id, "current_status": booking.status.value}
        if now > otp.expires_at:
            raise OtpExpired(
                "El OTP ha caducado. Solicita uno nuevo.",
                details={**details, "expires_at": otp.expires_at.isoformat()},
            )
        if otp.attempts_remaining <= 0:
            raise OtpAttemptsExhausted(
                "Demasiados intentos incorrectos. Solicita un nuevo código.",
                details={**details, "attempts_remaining": 0},
            )

        expected = booking.version
        if not secrets.compare_digest(code.encode(), otp.code.encode()):
            remaining = otp.attempts_remaining - 1
            updated = booking.model_copy(update={
                "completion_otp": otp.model_copy(update={"attempts_remaining": remaining}),
                "updated_at": now,
            })
            await self._store.save(updated, expected)
            logger.warning(f"OTP incorrecto para reserva {booking.booking_id}; quedan {remaining} intentos")
            raise InvalidOtp(
                f"OTP incorrecto. Intentos restantes: {remaining}",
                details={**details, "attempts_remaining": remaining},
            )

        updated = self._apply(booking, S.completed, actor, now, notes="Completada con verificación de OTP")
        saved = await self._store.save(updated, expected)
        logger.info(f"Reserva {saved.booking_id} completada con OTP ({actor.id})")
        return saved

    async def rate_booking(
        self, booking_id: str, actor: Actor, rating: int, review: Optional[str] = None
    ) -> Booking:
        booking = await self._store.load(booking_id)
        self._ensure_party(booking, actor)
        if actor.role == R.admin:
            raise _forbidden(booking, actor, "Un admin no puede valorar reservas")
        if booking.status != S.completed:
            raise BookingError(
                "Solo se pueden valorar reservas completadas",
                code="BookingNotCompleted",
                details={"booking_id": booking.id, "current_status": booking.status.value},
            )

        field = "customer_to_provider" if actor.role == R.customer else "provider_to_customer"
        if getattr(booking.rating, field) is not None:
            raise BookingError(
                "Ya has valorado esta reserva", code="AlreadyRated", details={"booking_id": booking.id}
            )

        now = self._clock()
        entry = RatingEntry(rating=rating, review=review, rated_at=now)
        updated = booking.model_copy(update={
            "rating": booking.rating.model_copy(update={field: entry}),
            "updated_at": now,
        })
        return await self._store.save(updated, booking.version)

