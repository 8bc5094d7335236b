"""
Socket.IO presence and push delivery.

Clients emit `join` with their user id after connecting and admins also emit
`join_admin_room`. The API pushes `new_notification`, `new_private_message`
and `new_activity` events through the helpers below.
"""
import asyncio
from typing import Dict, Optional

import socketio
import structlog

from config import CORS_ORIGINS, SOCKET_SWEEP_SECONDS

logger = structlog.get_logger()

ADMIN_ROOM = "admin_room"

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=CORS_ORIGINS)


class PresenceRegistry:
    """userId -> sid map for the sockets connected to this process."""

    def __init__(self):
        self._sockets: Dict[str, str] = {}

    def join(self, user_id: str, sid: str):
        self._sockets[user_id] = sid

    def leave(self, sid: str) -> Optional[str]:
        for user_id, known_sid in list(self._sockets.items()):
            if known_sid == sid:
                del self._sockets[user_id]
                return user_id
        return None

    def socket_for(self, user_id: str) -> Optional[str]:
        return self._sockets.get(user_id)

    def sweep(self, is_connected) -> int:
        stale = [uid for uid, sid in self._sockets.items() if not is_connected(sid)]
        for uid in stale:
            del self._sockets[uid]
        return len(stale)

    def __len__(self):
        return len(self._sockets)

    def __contains__(self, user_id):
        return user_id in self._sockets


presence = PresenceRegistry()


@sio.event
async def connect(sid, environ):
    logger.info(f"Socket connected: {sid}")


@sio.event
async def join(sid, user_id):
    if not user_id:
        return
    presence.join(str(user_id), sid)
    logger.info(f"User {user_id} joined with socket {sid}")


@sio.event
async def join_admin_room(sid, *args):
    await sio.enter_room(sid, ADMIN_ROOM)
    logger.info(f"Socket {sid} joined {ADMIN_ROOM}")


@sio.event
async def disconnect(sid, *args):
    user_id = presence.leave(sid)
    if user_id:
        logger.info(f"User {user_id} disconnected")


def _is_connected(sid) -> bool:
    return sio.manager.is_connected(sid, "/")


async def sweep_forever(interval: int = SOCKET_SWEEP_SECONDS):
    while True:
        await asyncio.sleep(interval)
        removed = presence.sweep(_is_connected)
        if removed:
            logger.info(f"Pruned {removed} stale socket entries")


async def emit_to_user(user_id: str, event: str, data: dict):
    sid = presence.socket_for(user_id)
    if sid:
        await sio.emit(event, data, to=sid)


async def emit_admin_activity(data: dict):
    await sio.emit("new_activity", data, room=ADMIN_ROOM)
