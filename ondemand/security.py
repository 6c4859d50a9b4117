from datetime import datetime, timedelta
from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from .config import get_settings
from .schemas.booking import Actor, ActorRole

settings = get_settings()
ALGO = "HS256"
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def create_access_token(user_id: str, role: ActorRole | str, expires_hours: Optional[int] = None) -> str:
    # La emisión real la hace la capa de autenticación; esto la replica para dev y tests
    expire = datetime.utcnow() + timedelta(hours=expires_hours or settings.jwt_expires_hours)
    role_value = role.value if isinstance(role, ActorRole) else role
    payload = {"sub": user_id, "role": role_value, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)


def decode_actor(token: str) -> Actor:
    """Traduce un JWT a un Actor. Lanza ValueError si no es válido."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGO])
    except JWTError as exc:
        raise ValueError("Token inválido") from exc
    sub = payload.get("sub")
    role = payload.get("role")
    if not sub or role not in {r.value for r in ActorRole}:
        raise ValueError("Token inválido")
    return Actor(role=ActorRole(role), id=str(sub))


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    try:
        return decode_actor(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Token inválido")


async def get_optional_actor(token: Optional[str] = Depends(optional_oauth2_scheme)) -> Optional[Actor]:
    """Para rutas públicas (crear reserva como invitado)."""
    if not token:
        return None
    try:
        return decode_actor(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Token inválido")
