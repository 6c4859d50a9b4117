"""
Rate limiting por endpoint usando slowapi (los endpoints de OTP lo necesitan)
"""
from fastapi import Request, HTTPException
from limits import parse
from slowapi.util import get_remote_address

def apply_rate_limit(request: Request, limit: str, scope: str = ""):
    """
    Aplica rate limiting a un endpoint específico.
    Uso: apply_rate_limit(request, "5/minute", scope="otp-request")

    Si el limiter no está configurado (por ejemplo, en tests), la función no hace nada.
    """
    limiter = getattr(request.app.state, "limiter", None)
    if limiter is None:
        return

    key = f"{scope}:{get_remote_address(request)}" if scope else get_remote_address(request)

    # limiter.limiter es la estrategia de `limits` que slowapi usa por debajo
    if not limiter.limiter.hit(parse(limit), key):
        raise HTTPException(
            status_code=429,
            detail=f"Demasiadas solicitudes. Límite: {limit}. Intenta más tarde."
        )
