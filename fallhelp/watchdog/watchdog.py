"""Caregiver-side connection health for a single watched elder.

The watchdog listens to the live channel and tracks whether the elder's
device is currently reporting. A device that goes quiet for longer than
``stale_threshold`` is treated as gone even when no offline message ever
arrived (power loss, Wi-Fi drop).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from fallhelp.live.publisher import (
    DEVICE_STATUS_UPDATE,
    EVENT_STATUS_CHANGED,
    FALL_DETECTED,
    HEART_RATE_ALERT,
    HEART_RATE_UPDATE,
)
from fallhelp.shared.config import optional_env
from fallhelp.shared.logging import log_event
from fallhelp.watchdog.client import CONNECT, DISCONNECT

logger = logging.getLogger(__name__)

STALE_THRESHOLD_SECONDS = float(optional_env("WATCHDOG_STALE_THRESHOLD_SECONDS", "60"))
CHECK_INTERVAL_SECONDS = float(optional_env("WATCHDOG_CHECK_INTERVAL_SECONDS", "5"))
DEVICE_HEARTBEAT_INTERVAL_SECONDS = float(optional_env("DEVICE_HEARTBEAT_INTERVAL_SECONDS", "30"))

RESOLVED = "RESOLVED"


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTED_NO_DEVICE = "CONNECTED_NO_DEVICE"
    CONNECTED_DEVICE_ONLINE = "CONNECTED_DEVICE_ONLINE"


class FallStatus(str, Enum):
    NORMAL = "NORMAL"
    FALL = "FALL"


class AppState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


@dataclass
class WatchdogState:
    elder_id: str
    connection: ConnectionState = ConnectionState.DISCONNECTED
    last_heard: Optional[float] = None
    heart_rate: Optional[float] = None
    fall_status: FallStatus = FallStatus.NORMAL
    active_fall_event_id: Optional[str] = None
    last_update: Optional[str] = None
    app_state: AppState = AppState.ACTIVE

    @property
    def device_online(self) -> bool:
        return self.connection == ConnectionState.CONNECTED_DEVICE_ONLINE


LifecycleListener = Callable[[AppState, AppState], None]


class AppLifecycle:
    """Foreground/background notifications from the host application."""

    def __init__(self, state: AppState = AppState.ACTIVE):
        self.state = state
        self._listeners: list[LifecycleListener] = []

    def add_listener(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: LifecycleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def set_state(self, state: AppState) -> None:
        previous, self.state = self.state, state
        if previous == state:
            return
        for listener in list(self._listeners):
            listener(previous, state)


class ConnectionWatchdog:
    def __init__(
        self,
        client,
        elder_id: str,
        lifecycle: Optional[AppLifecycle] = None,
        stale_threshold: float = STALE_THRESHOLD_SECONDS,
        check_interval: float = CHECK_INTERVAL_SECONDS,
        heartbeat_interval: float = DEVICE_HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if stale_threshold <= heartbeat_interval:
            raise ValueError(
                f"stale_threshold ({stale_threshold}s) must exceed the device "
                f"heartbeat interval ({heartbeat_interval}s)"
            )
        if check_interval <= 0:
            raise ValueError("check_interval must be positive")
        self.client = client
        self.lifecycle = lifecycle
        self.stale_threshold = stale_threshold
        self.check_interval = check_interval
        self.clock = clock
        self.state = WatchdogState(elder_id=elder_id)
        if lifecycle is not None:
            self.state.app_state = lifecycle.state

        self._listeners = {
            CONNECT: self._on_connect,
            DISCONNECT: self._on_disconnect,
            HEART_RATE_UPDATE: self._on_heart_rate,
            HEART_RATE_ALERT: self._on_heart_rate,
            DEVICE_STATUS_UPDATE: self._on_device_status,
            FALL_DETECTED: self._on_fall,
            EVENT_STATUS_CHANGED: self._on_event_status,
        }
        self._timer: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for event, listener in self._listeners.items():
            self.client.on(event, listener)
        if self.lifecycle is not None:
            self.lifecycle.add_listener(self._on_app_state)
        self._timer = asyncio.create_task(self._check_loop(), name="connection-watchdog")
        if self.client.connected:
            self._on_connect(None)

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        for event, listener in self._listeners.items():
            self.client.off(event, listener)
        if self.lifecycle is not None:
            self.lifecycle.remove_listener(self._on_app_state)
        tasks = [t for t in (self._timer, *self._pending) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timer = None
        self._pending.clear()

    async def _check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            self.check_stale()

    def check_stale(self, now: Optional[float] = None) -> bool:
        """Mark the device gone if nothing was heard within the threshold."""
        state = self.state
        if state.connection != ConnectionState.CONNECTED_DEVICE_ONLINE or state.last_heard is None:
            return False
        now = self.clock() if now is None else now
        silent_for = now - state.last_heard
        if silent_for <= self.stale_threshold:
            return False
        state.connection = ConnectionState.CONNECTED_NO_DEVICE
        state.heart_rate = None
        log_event(
            logger,
            "device silent, marking offline",
            level="WARNING",
            elder_id=state.elder_id,
            silent_seconds=round(silent_for, 1),
        )
        return True

    def _authenticate(self) -> None:
        task = asyncio.ensure_future(self.client.emit("authenticate", {"elderId": self.state.elder_id}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _for_watched_elder(self, data) -> bool:
        return isinstance(data, dict) and data.get("elderId") == self.state.elder_id

    def _heard(self, data: dict) -> None:
        self.state.last_heard = self.clock()
        self.state.last_update = data.get("timestamp") or self.state.last_update

    def _on_connect(self, _data) -> None:
        self.state.connection = ConnectionState.CONNECTED_NO_DEVICE
        self._authenticate()
        log_event(logger, "live channel up", elder_id=self.state.elder_id)

    def _on_disconnect(self, _data) -> None:
        self.state.connection = ConnectionState.DISCONNECTED
        log_event(logger, "live channel down", level="WARNING", elder_id=self.state.elder_id)

    def _on_heart_rate(self, data) -> None:
        if not self._for_watched_elder(data):
            return
        self._heard(data)
        self.state.heart_rate = data.get("heartRate")
        self.state.connection = ConnectionState.CONNECTED_DEVICE_ONLINE

    def _on_device_status(self, data) -> None:
        if not self._for_watched_elder(data):
            return
        self._heard(data)
        if data.get("online"):
            self.state.connection = ConnectionState.CONNECTED_DEVICE_ONLINE
        else:
            self.state.connection = ConnectionState.CONNECTED_NO_DEVICE
            self.state.heart_rate = None

    def _on_fall(self, data) -> None:
        if not self._for_watched_elder(data):
            return
        self._heard(data)
        self.state.connection = ConnectionState.CONNECTED_DEVICE_ONLINE
        self.state.fall_status = FallStatus.FALL
        self.state.active_fall_event_id = data.get("eventId")

    def _on_event_status(self, data) -> None:
        if not self._for_watched_elder(data):
            return
        self._heard(data)
        if self.state.connection == ConnectionState.CONNECTED_NO_DEVICE:
            self.state.connection = ConnectionState.CONNECTED_DEVICE_ONLINE
        if data.get("status") == RESOLVED:
            self.state.fall_status = FallStatus.NORMAL
            self.state.active_fall_event_id = None

    def _on_app_state(self, previous: AppState, current: AppState) -> None:
        self.state.app_state = current
        if current != AppState.ACTIVE or previous == AppState.ACTIVE:
            return
        if self.client.connected:
            self._authenticate()
        else:
            self.client.reconnect()
