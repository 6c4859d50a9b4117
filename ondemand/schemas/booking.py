from pydantic import BaseModel, EmailStr, Field, field_validator
from enum import Enum
from datetime import datetime
from typing import Optional, Dict
import re

class BookingStatus(str, Enum):
    pending               = "pending"
    confirmed             = "confirmed"
    provider_on_way       = "provider_on_way"
    in_progress           = "in_progress"
    work_completed        = "work_completed"
    completed             = "completed"
    cancelled_by_customer = "cancelled_by_customer"
    cancelled_by_provider = "cancelled_by_provider"
    cancelled_by_admin    = "cancelled_by_admin"

TERMINAL_STATUSES = frozenset({
    BookingStatus.completed,
    BookingStatus.cancelled_by_customer,
    BookingStatus.cancelled_by_provider,
    BookingStatus.cancelled_by_admin,
})

class ActorRole(str, Enum):
    customer = "customer"
    provider = "provider"
    admin    = "admin"

class Actor(BaseModel, frozen=True):
    role: ActorRole
    id: str

def validate_phone(phone: str) -> str:
    """Valida formato de teléfono (permite +, números, espacios, guiones)"""
    cleaned = re.sub(r'[\s\-]', '', phone)
    if not re.match(r'^\+?\d{9,15}$', cleaned):
        raise ValueError("Formato de teléfono inválido. Use formato internacional (ej: +919876543210)")
    return phone

# ---------- Snapshots embebidos en la reserva ----------

class CustomerInfo(BaseModel):
    user_id: Optional[str] = None
    name: str = Field(..., min_length=2, max_length=80)
    email: EmailStr
    phone: str = Field(..., max_length=20)

    @field_validator('phone')
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        return validate_phone(v)

class ServiceAddress(BaseModel):
    address_line1: str
    address_line2: Optional[str] = None
    landmark: Optional[str] = None
    city: str
    state: str
    pincode: str

class TimeSlot(BaseModel):
    start: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{2}:\d{2}$")

class ServiceDetails(BaseModel):
    description: Optional[str] = None
    special_instructions: Optional[str] = None

class Pricing(BaseModel):
    service_charge: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    total: float = Field(..., ge=0)

class CompletionOtp(BaseModel):
    code: str
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int = Field(..., ge=0)

class StatusHistoryEntry(BaseModel, frozen=True):
    status: BookingStatus
    timestamp: datetime
    actor: Actor
    notes: Optional[str] = None

class WorkDuration(BaseModel):
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    actual_minutes: Optional[int] = None

class Cancellation(BaseModel):
    cancelled_by: ActorRole
    reason: Optional[str] = None
    cancelled_at: datetime
    refund_eligible: bool = True

class RatingEntry(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None
    rated_at: datetime

class Rating(BaseModel):
    customer_to_provider: Optional[RatingEntry] = None
    provider_to_customer: Optional[RatingEntry] = None

class Booking(BaseModel):
    """Documento completo de una reserva bajo demanda, tal como se persiste."""
    id: Optional[str] = None
    booking_id: str
    customer: CustomerInfo
    service_provider: Optional[str] = None
    service_id: str
    status: BookingStatus = BookingStatus.pending
    scheduled_date: datetime
    time_slot: TimeSlot
    service_address: ServiceAddress
    service_details: ServiceDetails = ServiceDetails()
    pricing: Pricing
    completion_otp: Optional[CompletionOtp] = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    work_duration: WorkDuration = WorkDuration()
    cancellation: Optional[Cancellation] = None
    rating: Rating = Rating()
    created_at: datetime
    updated_at: datetime
    version: int = 0

# ---------- Entrada ----------

class PricingIn(BaseModel):
    service_charge: float = Field(..., ge=0, le=1_000_000)
    tax: float = Field(0, ge=0, le=1_000_000)

class CustomerIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=80)
    email: EmailStr
    phone: str = Field(..., max_length=20)

    @field_validator('phone')
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        return validate_phone(v)

class BookingCreate(BaseModel):
    service_id: str
    customer: CustomerIn
    service_address: ServiceAddress
    scheduled_date: datetime
    time_slot: TimeSlot
    service_details: ServiceDetails = ServiceDetails()
    pricing: PricingIn

class StatusPatch(BaseModel):
    status: BookingStatus
    notes: Optional[str] = Field(None, max_length=500)
    reason: Optional[str] = Field(None, max_length=500)

class ProviderAssign(BaseModel):
    provider_id: str = Field(..., min_length=1)

class OtpVerify(BaseModel):
    otp: str = Field(..., pattern=r"^\d{4,10}$", description="Código recibido por el cliente")

class RatingCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)

class TrackRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)

# ---------- Salida ----------

class OtpStatusOut(BaseModel):
    # Nunca exponemos el código
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int

class OtpRequestAck(BaseModel):
    message: str
    expires_at: datetime
    attempts_remaining: int

class BookingOut(BaseModel):
    id: str
    booking_id: str
    customer: CustomerInfo
    service_provider: Optional[str] = None
    service_id: str
    status: BookingStatus
    scheduled_date: datetime
    time_slot: TimeSlot
    service_address: ServiceAddress
    service_details: ServiceDetails
    pricing: Pricing
    completion_otp: Optional[OtpStatusOut] = None
    status_history: list[StatusHistoryEntry]
    work_duration: WorkDuration
    cancellation: Optional[Cancellation] = None
    rating: Rating
    created_at: datetime
    updated_at: datetime
    version: int

class BookingStats(BaseModel):
    total: int
    by_status: Dict[str, int]
    cancelled: int
    active: int
    today: int = 0
    revenue: float = 0.0

class BookingPage(BaseModel):
    data: list[BookingOut]
    total: int
    page: int
    pages: int
    limit: int
