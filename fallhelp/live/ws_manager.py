import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Optional

from starlette.websockets import WebSocket

from fallhelp.shared.metrics import live_connections

logger = logging.getLogger(__name__)

SESSION_REPLACED_CLOSE_CODE = 4000

_connection_ids = itertools.count(1)


def elder_room(elder_id: str) -> str:
    return f"elder:{elder_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass(eq=False)
class WSConnection:
    """A single live-channel client and the rooms it has joined."""
    websocket: WebSocket
    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    user_id: Optional[str] = None
    rooms: set = field(default_factory=set)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConnectionManager:
    """Tracks live-channel connections, their rooms and per-user sessions.

    A user has at most one session: authenticating the same user id from a
    second connection closes the first.
    """

    def __init__(self):
        self.connections: list[WSConnection] = []
        self.rooms: dict[str, set[WSConnection]] = {}
        self.user_sessions: dict[str, WSConnection] = {}

    async def connect(self, websocket: WebSocket) -> WSConnection:
        await websocket.accept()
        conn = WSConnection(websocket=websocket)
        self.connections.append(conn)
        live_connections.set(len(self.connections))
        logger.info("[ws] connected: conn=%s", conn.connection_id)
        return conn

    async def disconnect(self, conn: WSConnection) -> None:
        """Forget a connection. Safe to call more than once."""
        if conn in self.connections:
            self.connections.remove(conn)
        for room in list(conn.rooms):
            self._leave(conn, room)
        if conn.user_id and self.user_sessions.get(conn.user_id) is conn:
            del self.user_sessions[conn.user_id]
        live_connections.set(len(self.connections))
        logger.info("[ws] disconnected: conn=%s user=%s", conn.connection_id, conn.user_id)

    def join(self, conn: WSConnection, room: str) -> None:
        conn.rooms.add(room)
        self.rooms.setdefault(room, set()).add(conn)

    def _leave(self, conn: WSConnection, room: str) -> None:
        conn.rooms.discard(room)
        members = self.rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.rooms[room]

    async def authenticate(
        self,
        conn: WSConnection,
        user_id: Optional[str] = None,
        elder_id: Optional[str] = None,
    ) -> Optional[WSConnection]:
        """Join the user/elder rooms. Returns the session this one replaced, if any."""
        replaced = None
        if user_id:
            previous = self.user_sessions.get(user_id)
            if previous is not None and previous is not conn:
                replaced = previous
                logger.info(
                    "[ws] replacing session: user=%s old=%s new=%s",
                    user_id, previous.connection_id, conn.connection_id,
                )
                await self.disconnect(previous)
                try:
                    await previous.websocket.close(
                        code=SESSION_REPLACED_CLOSE_CODE, reason="Session replaced"
                    )
                except RuntimeError:
                    # already closed by the client
                    pass
            conn.user_id = user_id
            self.user_sessions[user_id] = conn
            self.join(conn, user_room(user_id))
        if elder_id:
            self.join(conn, elder_room(elder_id))
        logger.info(
            "[ws] authenticated: conn=%s user=%s elder=%s",
            conn.connection_id, user_id or "none", elder_id or "none",
        )
        return replaced

    async def send(self, conn: WSConnection, event: str, data: dict) -> bool:
        """Send one message. A failed send drops the connection and returns False."""
        try:
            async with conn.send_lock:
                await conn.websocket.send_json({"event": event, "data": data})
            return True
        except Exception as exc:
            logger.warning(
                "[ws] send failed, dropping connection: conn=%s error=%s",
                conn.connection_id, exc,
            )
            await self.disconnect(conn)
            return False

    async def emit_to_room(self, room: str, event: str, data: dict) -> int:
        """Send to every member of a room concurrently. Returns deliveries."""
        members = list(self.rooms.get(room, ()))
        if not members:
            return 0
        results = await asyncio.gather(*(self.send(c, event, data) for c in members))
        return sum(1 for ok in results if ok)

    async def broadcast(self, event: str, data: dict) -> int:
        members = list(self.connections)
        if not members:
            return 0
        results = await asyncio.gather(*(self.send(c, event, data) for c in members))
        return sum(1 for ok in results if ok)

    def room_size(self, room: str) -> int:
        return len(self.rooms.get(room, ()))

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    async def close_all(self) -> None:
        for conn in list(self.connections):
            await self.disconnect(conn)
            try:
                await conn.websocket.close(code=1001, reason="Server shutting down")
            except RuntimeError:
                pass
