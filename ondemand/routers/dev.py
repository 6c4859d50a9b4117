# ondemand/routers/dev.py
# Endpoint de desarrollo para crear datos de prueba
from fastapi import APIRouter, Depends
from datetime import datetime, timedelta

from ..dependencies import get_lifecycle_manager
from ..lifecycle import BookingLifecycleManager
from ..schemas.booking import Actor, ActorRole, BookingCreate, BookingStatus
from ..security import create_access_token

router = APIRouter()

DEV_CUSTOMER = Actor(role=ActorRole.customer, id="dev-customer")
DEV_PROVIDER = Actor(role=ActorRole.provider, id="dev-provider")
DEV_ADMIN = Actor(role=ActorRole.admin, id="dev-admin")

SAMPLE_SERVICES = [
    ("Plumbing Service", 500.0, "Grifo de cocina gotea"),
    ("Electrical Repair", 750.0, "Cambiar enchufes del salón"),
    ("Deep Cleaning", 1200.0, "Limpieza completa 2BHK"),
]

@router.post("/seed-data")
async def seed_data(manager: BookingLifecycleManager = Depends(get_lifecycle_manager)):
    """
    Crea reservas de prueba en distintos estados y devuelve tokens para
    cliente, proveedor y admin. Solo para desarrollo.
    """
    tomorrow = datetime.utcnow() + timedelta(days=1)
    # El índice de cada servicio decide hasta dónde avanza la reserva
    progress = [
        [],
        [BookingStatus.provider_on_way],
        [BookingStatus.provider_on_way, BookingStatus.in_progress],
    ]

    created = []
    for (title, price, description), steps in zip(SAMPLE_SERVICES, progress):
        booking = await manager.create_booking(BookingCreate(
            service_id=title.lower().replace(" ", "-"),
            customer={"name": "Test Customer", "email": "customer@example.com", "phone": "9999999999"},
            service_address={
                "address_line1": "123 Main Street",
                "city": "Bangalore",
                "state": "Karnataka",
                "pincode": "560001",
            },
            scheduled_date=tomorrow,
            time_slot={"start": "10:00", "end": "12:00"},
            service_details={"description": description},
            pricing={"service_charge": price, "tax": round(price * 0.18, 2)},
        ), DEV_CUSTOMER)
        booking = await manager.assign_provider(booking.id, DEV_PROVIDER.id, DEV_ADMIN)
        for step in steps:
            booking = await manager.transition(booking.id, step, DEV_PROVIDER)
        created.append({"id": booking.id, "booking_id": booking.booking_id, "status": booking.status.value})

    return {
        "bookings": created,
        "tokens": {
            actor.role.value: create_access_token(actor.id, actor.role)
            for actor in (DEV_CUSTOMER, DEV_PROVIDER, DEV_ADMIN)
        },
    }
