"""Reconnecting live-channel client used by caregiver-side tooling.

Listeners are plain callables registered per message name. Two pseudo
events, ``connect`` and ``disconnect``, report transport state. Reconnection
never gives up; it waits ``reconnect_delay`` between attempts.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from fallhelp.shared.config import optional_env

logger = logging.getLogger(__name__)

LIVE_CHANNEL_URL = optional_env("LIVE_CHANNEL_URL", "ws://localhost:8080/ws")
RECONNECT_DELAY_SECONDS = float(optional_env("LIVE_RECONNECT_DELAY_SECONDS", "1"))
OPEN_TIMEOUT_SECONDS = float(optional_env("LIVE_OPEN_TIMEOUT_SECONDS", "5"))

CONNECT = "connect"
DISCONNECT = "disconnect"

Listener = Callable[[Any], None]


class LiveChannelClient:
    def __init__(
        self,
        url: str = LIVE_CHANNEL_URL,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        open_timeout: float = OPEN_TIMEOUT_SECONDS,
        connector=connect,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self._connector = connector
        self._listeners: dict[str, list[Listener]] = {}
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._closed = False
        self.attempts = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del self._listeners[event]

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(v) for v in self._listeners.values())

    def _fire(self, event: str, data: Any = None) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(data)
            except Exception:
                logger.exception("live listener failed: event=%s", event)

    async def emit(self, event: str, data: Optional[dict] = None) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps({"event": event, "data": data or {}}))
            return True
        except WebSocketException as exc:
            logger.warning("live send failed: %s", exc)
            return False

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self._run(), name="live-channel-client")

    def reconnect(self) -> None:
        """Skip the backoff wait and try to connect now."""
        if self._closed:
            return
        if self._task is None or self._task.done():
            self.start()
        self._wake.set()

    async def _run(self) -> None:
        while not self._closed:
            self.attempts += 1
            try:
                async with self._connector(self.url, open_timeout=self.open_timeout) as ws:
                    self._ws = ws
                    self.attempts = 0
                    logger.info("live channel connected: %s", self.url)
                    self._fire(CONNECT)
                    async for raw in ws:
                        self._dispatch(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.info("live channel unavailable (attempt %d): %s", self.attempts, exc)
            finally:
                if self._ws is not None:
                    self._ws = None
                    self._fire(DISCONNECT)
            if self._closed:
                break
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.reconnect_delay)
            except asyncio.TimeoutError:
                pass

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("live channel sent invalid JSON")
            return
        if not isinstance(message, dict) or "event" not in message:
            return
        self._fire(message["event"], message.get("data") or {})

    async def close(self) -> None:
        self._closed = True
        self._wake.set()
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
