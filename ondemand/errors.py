# ondemand/errors.py
"""
Errores de dominio del ciclo de vida de reservas.

Cada error lleva un ``code`` estable y un diccionario ``details`` (id de la
reserva, estado actual, actor, intentos restantes...) para que la capa web
pueda mostrar un mensaje preciso sin parsear el texto.
"""
from typing import Any, Dict, Optional

from fastapi import status


class BookingError(Exception):
    """Base de todos los errores del ciclo de vida."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}



class NotFound(BookingError):
    """Reserva inexistente o sin OTP activo."""

    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(BookingError):
    """El actor no tiene permiso para esta arista o esta reserva."""

    status_code = status.HTTP_403_FORBIDDEN


class InvalidTransition(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        booking_id: str,
        current: str,
        requested: str,
        allowed: list[str],
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message or f"Transición no permitida: {current} → {requested}",
            details={
                "booking_id": booking_id,
                "current_status": current,
                "requested_status": requested,
                "allowed": allowed,
            },
        )
        self.current = current
        self.requested = requested
        self.allowed = allowed


class OtpExpired(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidOtp(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST

    @property
    def attempts_remaining(self) -> int:
        return self.details.get("attempts_remaining", 0)


class OtpAttemptsExhausted(BookingError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class Conflict(BookingError):
    """Otra petición modificó la reserva entre la lectura y la escritura."""

    status_code = status.HTTP_409_CONFLICT
