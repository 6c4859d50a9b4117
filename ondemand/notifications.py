# ondemand/notifications.py
from abc import ABC, abstractmethod
import logging

from .schemas.booking import Booking, CustomerInfo

logger = logging.getLogger(__name__)


class NotificationDeliveryError(RuntimeError):
    """El canal no pudo entregar la notificación al cliente."""


class NotificationSender(ABC):
    @abstractmethod
    async def send_otp(self, contact: CustomerInfo, code: str, booking: Booking) -> None:
        raise NotImplementedError


class LogNotificationSender(NotificationSender):
    """Entrega de desarrollo: el código queda en el log del backend."""

    async def send_otp(self, contact: CustomerInfo, code: str, booking: Booking) -> None:
        logger.info(
            f"OTP de finalización para reserva {booking.booking_id} "
            f"({contact.phone} / {contact.email}): {code}"
        )


# Importación diferida para evitar el import circular con el router
def get_websocket_manager():
    from .routers.websocket import manager
    return manager


class WebSocketNotificationSender(NotificationSender):
    async def send_otp(self, contact: CustomerInfo, code: str, booking: Booking) -> None:
        if not contact.user_id:
            raise NotificationDeliveryError(
                f"La reserva {booking.booking_id} no tiene usuario cliente para el canal websocket"
            )
        ws_manager = get_websocket_manager()
        if not ws_manager.is_connected(contact.user_id):
            raise NotificationDeliveryError(f"Cliente {contact.user_id} sin conexión websocket activa")
        otp = booking.completion_otp
        delivered = await ws_manager.send_personal_message({
            "type": "completion_otp",
            "booking_id": booking.id,
            "reference": booking.booking_id,
            "code": code,
            "expires_at": otp.expires_at.isoformat() if otp else None,
        }, contact.user_id)
        if not delivered:
            raise NotificationDeliveryError(f"Falló el envío websocket al cliente {contact.user_id}")


def build_notification_sender(channel: str) -> NotificationSender:
    if channel == "websocket":
        return WebSocketNotificationSender()
    return LogNotificationSender()
