# ondemand/routers/websocket.py
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict, Optional
import logging

from ..schemas.booking import Actor
from ..security import decode_actor

logger = logging.getLogger(__name__)

router = APIRouter()

class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self.active_connections[user_id] = websocket

    def disconnect(self, user_id: str):
        if user_id in self.active_connections:
            del self.active_connections[user_id]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.active_connections

    async def send_personal_message(self, message: dict, user_id: str) -> bool:
        """Devuelve True si el mensaje salió por un socket abierto."""
        websocket = self.active_connections.get(user_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.error(f"Error sending to {user_id}: {e}", exc_info=True)
            self.disconnect(user_id)
            return False

manager = ConnectionManager()

async def get_actor_from_token(websocket: WebSocket, token: str) -> Optional[Actor]:
    """Extrae el actor del token JWT; cierra el socket si no es válido."""
    try:
        return decode_actor(token)
    except ValueError:
        await websocket.close(code=1008, reason="Invalid token")
        return None

@router.websocket("/ws/{token}")
async def websocket_endpoint(websocket: WebSocket, token: str):
    """
    Canal de notificaciones del cliente (OTP de finalización).
    El token se pasa como parámetro en la URL.
    """
    actor = await get_actor_from_token(websocket, token)
    if not actor:
        return

    await manager.connect(websocket, actor.id)

    try:
        await websocket.send_json({
            "type": "connected",
            "user_id": actor.id,
            "role": actor.role.value,
        })

        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})

    except WebSocketDisconnect:
        manager.disconnect(actor.id)
    except Exception as e:
        logger.error(f"Error en WebSocket: {e}", exc_info=True)
        manager.disconnect(actor.id)
