"""
Real-time fan-out over Socket.IO.

Request handlers run in worker threads and call ``RealtimeChannel.publish``
after their database write has succeeded. Publishing schedules the emit on
the server's event loop and returns immediately: delivery is at-most-once
and a failed emit is logged, never raised. Clients reconcile with a
follow-up HTTP fetch.

Rooms:
    trip-<trip_id>   everyone with the trip page open
    user-<user_id>   every socket of one user (direct/group chat delivery)
"""

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Callable, Optional

import socketio
from pymongo.database import Database
from socketio.exceptions import ConnectionRefusedError as SocketConnectionRefused

from auth import user_for_token
from database import serialize_doc, to_object_id
from errors import NotFound
from policies import AccessPolicy

logger = logging.getLogger(__name__)


def trip_room(trip_id: str) -> str:
    return f"trip-{trip_id}"


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


def create_socket_server(cors_origins) -> socketio.AsyncServer:
    origins = "*" if cors_origins == ["*"] else cors_origins
    return socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=origins)


class RealtimeChannel:
    def __init__(self, server: socketio.AsyncServer):
        self.server = server
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def publish(self, event: str, payload: Any, room: Optional[str] = None) -> Optional[Future]:
        """Emit ``event`` to ``room``, or to every connected client when room is None.

        Returns the scheduled future without waiting on it, or None when the
        event was dropped.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"No running event loop, dropping {event} for {room or 'all'}")
            return None
        try:
            data = serialize_doc(payload)
            future = asyncio.run_coroutine_threadsafe(self.server.emit(event, data, to=room), loop)
        except Exception:
            logger.warning(f"Failed to schedule {event} for {room or 'all'}", exc_info=True)
            return None
        future.add_done_callback(lambda f: self._report(f, event, room))
        return future

    @staticmethod
    def _report(future: Future, event: str, room: Optional[str]) -> None:
        if future.cancelled():
            logger.warning(f"Emit of {event} to {room or 'all'} was cancelled")
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(f"Emit of {event} to {room or 'all'} failed: {exc!r}")


class SocketHandlers:
    """Connection and room-membership events coming from clients."""

    def __init__(self, server: socketio.AsyncServer, get_database: Callable[[], Database], policy: AccessPolicy):
        self.server = server
        self.get_database = get_database
        self.policy = policy

    def register(self) -> None:
        self.server.on("connect", self.connect)
        self.server.on("disconnect", self.disconnect)
        self.server.on("joinTrip", self.join_trip)
        self.server.on("leaveTrip", self.leave_trip)

    async def connect(self, sid, environ, auth=None):
        token = auth.get("token") if isinstance(auth, dict) else None
        # pymongo blocks, so lookups run in a worker thread
        user = await asyncio.to_thread(self._find_user, token) if token else None
        if not user:
            raise SocketConnectionRefused("authentication failed")
        user_id = str(user["_id"])
        await self.server.save_session(sid, {"user_id": user_id})
        await self.server.enter_room(sid, user_room(user_id))
        logger.info(f"Socket {sid} connected for user {user_id}")

    def _find_user(self, token: str) -> Optional[dict]:
        return user_for_token(self.get_database(), token)

    async def disconnect(self, sid, reason=None):
        logger.info(f"Socket {sid} disconnected")

    def _find_trip(self, trip_id) -> Optional[dict]:
        try:
            return self.get_database()["trip"].find_one({"_id": to_object_id(trip_id, "Trip")})
        except NotFound:
            return None

    async def join_trip(self, sid, data):
        trip_id = data.get("trip_id") if isinstance(data, dict) else None
        session = await self.server.get_session(sid)
        trip = await asyncio.to_thread(self._find_trip, trip_id) if trip_id else None
        if not trip or not self.policy.can_access_trip(trip, session.get("user_id")):
            return {"success": False, "message": "Access denied"}
        await self.server.enter_room(sid, trip_room(trip_id))
        return {"success": True}

    async def leave_trip(self, sid, data):
        trip_id = data.get("trip_id") if isinstance(data, dict) else None
        if trip_id:
            await self.server.leave_room(sid, trip_room(trip_id))
        return {"success": True}
