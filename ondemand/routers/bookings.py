# ondemand/routers/bookings.py
from fastapi import APIRouter, Depends, status, Path, Query, Request
from typing import List, Optional
from datetime import datetime
import math
import logging

from ..dependencies import get_lifecycle_manager
from ..lifecycle import BookingLifecycleManager
from ..schemas.booking import (
    Actor,
    Booking,
    BookingCreate,
    BookingOut,
    BookingPage,
    BookingStats,
    BookingStatus,
    OtpRequestAck,
    OtpVerify,
    ProviderAssign,
    RatingCreate,
    StatusPatch,
    TrackRequest,
)
from ..security import get_current_actor, get_optional_actor
from ..middleware.rate_limit import apply_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()

OBJECT_ID = r"^[0-9a-fA-F]{24}$"

def _to_out(booking: Booking) -> BookingOut:
    # completion_otp.code se descarta al validar contra OtpStatusOut
    return BookingOut.model_validate(booking.model_dump())

# ---------- Endpoints ----------

@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: Request,
    payload: BookingCreate,
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Optional[Actor] = Depends(get_optional_actor),
):
    # Rate limiting: máximo 15 reservas por minuto por IP
    apply_rate_limit(request, "15/minute", scope="bookings-create")
    return _to_out(await manager.create_booking(payload, actor))

@router.post("/track", response_model=BookingOut)
async def track_booking(
    request: Request,
    payload: TrackRequest,
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
):
    apply_rate_limit(request, "20/minute", scope="bookings-track")
    return _to_out(await manager.track_booking(payload.booking_id, payload.phone))

@router.get("/mine", response_model=List[BookingOut])
@router.get("/my", response_model=List[BookingOut])  # alias opcional
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    return [_to_out(b) for b in await manager.list_my_bookings(actor, status_filter)]

@router.get("/stats", response_model=BookingStats)
async def booking_stats(
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    return await manager.booking_stats(actor, from_date, to_date)

def _page(items: List[Booking], total: int, page: int, limit: int) -> BookingPage:
    return BookingPage(
        data=[_to_out(b) for b in items],
        total=total,
        page=page,
        pages=math.ceil(total / limit),
        limit=limit,
    )

@router.get("", response_model=BookingPage)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    service_provider: Optional[str] = Query(None, alias="serviceProvider"),
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    items, total = await manager.list_bookings(
        actor, status_filter, page=page, limit=limit,
        provider_id=service_provider, from_date=from_date, to_date=to_date,
    )
    return _page(items, total, page, limit)

@router.get("/provider/{provider_id}", response_model=BookingPage)
async def list_provider_bookings(
    provider_id: str,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    """Reservas de un proveedor concreto (solo admin)."""
    items, total = await manager.list_bookings(actor, status_filter, page=page, limit=limit, provider_id=provider_id)
    return _page(items, total, page, limit)

@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: str = Path(..., pattern=OBJECT_ID),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    return _to_out(await manager.get_booking(booking_id, actor))

@router.patch("/{booking_id}/status", response_model=BookingOut)
async def patch_status(
    body: StatusPatch,
    booking_id: str = Path(..., pattern=OBJECT_ID),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    booking = await manager.transition(booking_id, body.status, actor, notes=body.notes, reason=body.reason)
    return _to_out(booking)

@router.put("/{booking_id}/provider", response_model=BookingOut)
async def assign_provider(
    body: ProviderAssign,
    booking_id: str = Path(..., pattern=OBJECT_ID),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    return _to_out(await manager.assign_provider(booking_id, body.provider_id, actor))

@router.post("/{booking_id}/completion-otp", response_model=OtpRequestAck)
async def request_completion_otp(
    request: Request,
    booking_id: str = Path(..., pattern=OBJECT_ID),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    # Rate limiting: máximo 5 reemisiones por minuto por IP
    apply_rate_limit(request, "5/minute", scope="otp-request")
    booking = await manager.request_completion_otp(booking_id, actor)
    otp = booking.completion_otp
    return OtpRequestAck(
        message="OTP enviado al cliente",
        expires_at=otp.expires_at,
        attempts_remaining=otp.attempts_remaining,
    )

@router.post("/{booking_id}/completion-otp/verify", response_model=BookingOut)
async def verify_completion_otp(
    request: Request,
    body: OtpVerify,
    booking_id: str = Path(..., pattern=OBJECT_ID),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    apply_rate_limit(request, "10/minute", scope="otp-verify")
    return _to_out(await manager.verify_completion_otp(booking_id, body.otp, actor))

@router.post("/{booking_id}/rating", response_model=BookingOut)
async def rate_booking(
    body: RatingCreate,
    booking_id: str = Path(..., pattern=OBJECT_ID),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
    actor: Actor = Depends(get_current_actor),
):
    return _to_out(await manager.rate_booking(booking_id, actor, body.rating, body.review))
