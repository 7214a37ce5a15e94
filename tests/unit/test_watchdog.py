import asyncio

import pytest

from fallhelp.watchdog.client import CONNECT, DISCONNECT, LiveChannelClient
from fallhelp.watchdog.watchdog import (
    AppLifecycle,
    AppState,
    ConnectionState,
    ConnectionWatchdog,
    FallStatus,
)

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeLiveClient:
    """Listener registry with the LiveChannelClient surface the watchdog uses."""

    def __init__(self, connected=False):
        self.connected = connected
        self.listeners = {}
        self.emitted = []
        self.reconnects = 0

    def on(self, event, listener):
        self.listeners.setdefault(event, []).append(listener)

    def off(self, event, listener):
        self.listeners.get(event, []).remove(listener)

    def listener_count(self):
        return sum(len(v) for v in self.listeners.values())

    async def emit(self, event, data=None):
        self.emitted.append((event, data))
        return True

    def reconnect(self):
        self.reconnects += 1

    def fire(self, event, data=None):
        if event == CONNECT:
            self.connected = True
        elif event == DISCONNECT:
            self.connected = False
        for listener in list(self.listeners.get(event, [])):
            listener(data)


def _watchdog(client=None, lifecycle=None, check_interval=60.0, **kwargs):
    clock = FakeClock()
    client = client or FakeLiveClient()
    watchdog = ConnectionWatchdog(
        client,
        "elder-1",
        lifecycle=lifecycle,
        check_interval=check_interval,
        clock=clock,
        **kwargs,
    )
    return watchdog, client, clock


async def _online(watchdog, client, bpm=72):
    client.fire(CONNECT)
    client.fire("heart_rate_update", {"elderId": "elder-1", "heartRate": bpm, "timestamp": "t1"})
    await asyncio.sleep(0)


async def test_threshold_must_exceed_heartbeat_interval():
    with pytest.raises(ValueError):
        ConnectionWatchdog(FakeLiveClient(), "elder-1", stale_threshold=30, heartbeat_interval=30)


async def test_connect_authenticates_with_elder_id():
    watchdog, client, _ = _watchdog()
    watchdog.start()
    try:
        client.fire(CONNECT)
        await asyncio.sleep(0)
        assert watchdog.state.connection == ConnectionState.CONNECTED_NO_DEVICE
        assert client.emitted == [("authenticate", {"elderId": "elder-1"})]
    finally:
        await watchdog.close()


async def test_heart_rate_moves_to_device_online():
    watchdog, client, _ = _watchdog()
    watchdog.start()
    try:
        await _online(watchdog, client)
        assert watchdog.state.connection == ConnectionState.CONNECTED_DEVICE_ONLINE
        assert watchdog.state.heart_rate == 72
        assert watchdog.state.last_update == "t1"
    finally:
        await watchdog.close()


async def test_staleness_flips_state_and_clears_heart_rate():
    watchdog, client, clock = _watchdog(stale_threshold=60, heartbeat_interval=30)
    watchdog.start()
    try:
        await _online(watchdog, client)

        clock.advance(59)
        assert watchdog.check_stale() is False
        assert watchdog.state.connection == ConnectionState.CONNECTED_DEVICE_ONLINE

        clock.advance(2)
        assert watchdog.check_stale() is True
        assert watchdog.state.connection == ConnectionState.CONNECTED_NO_DEVICE
        assert watchdog.state.heart_rate is None
        assert client.connected is True
    finally:
        await watchdog.close()


async def test_timer_runs_staleness_check():
    watchdog, client, clock = _watchdog(check_interval=0.01, stale_threshold=60, heartbeat_interval=30)
    watchdog.start()
    try:
        await _online(watchdog, client)
        clock.advance(120)
        await asyncio.sleep(0.05)
        assert watchdog.state.connection == ConnectionState.CONNECTED_NO_DEVICE
    finally:
        await watchdog.close()


async def test_fresh_message_after_stale_restores_online():
    watchdog, client, clock = _watchdog()
    watchdog.start()
    try:
        await _online(watchdog, client)
        clock.advance(120)
        watchdog.check_stale()
        client.fire("device_status_update", {"elderId": "elder-1", "online": True})
        assert watchdog.state.connection == ConnectionState.CONNECTED_DEVICE_ONLINE
        clock.advance(30)
        assert watchdog.check_stale() is False
    finally:
        await watchdog.close()


async def test_offline_status_clears_heart_rate():
    watchdog, client, _ = _watchdog()
    watchdog.start()
    try:
        await _online(watchdog, client)
        client.fire("device_status_update", {"elderId": "elder-1", "online": False})
        assert watchdog.state.connection == ConnectionState.CONNECTED_NO_DEVICE
        assert watchdog.state.heart_rate is None
    finally:
        await watchdog.close()


async def test_messages_for_other_elders_are_ignored():
    watchdog, client, _ = _watchdog()
    watchdog.start()
    try:
        client.fire(CONNECT)
        client.fire("heart_rate_update", {"elderId": "elder-2", "heartRate": 140})
        client.fire("fall_detected", {"elderId": "elder-2", "eventId": "evt-x"})
        assert watchdog.state.connection == ConnectionState.CONNECTED_NO_DEVICE
        assert watchdog.state.heart_rate is None
        assert watchdog.state.fall_status == FallStatus.NORMAL
    finally:
        await watchdog.close()


async def test_fall_then_resolved():
    watchdog, client, _ = _watchdog()
    watchdog.start()
    try:
        client.fire(CONNECT)
        client.fire("fall_detected", {"elderId": "elder-1", "eventId": "evt-7"})
        assert watchdog.state.fall_status == FallStatus.FALL
        assert watchdog.state.active_fall_event_id == "evt-7"

        client.fire("event_status_changed", {"elderId": "elder-1", "eventId": "evt-7", "status": "ACKNOWLEDGED"})
        assert watchdog.state.fall_status == FallStatus.FALL

        client.fire("event_status_changed", {"elderId": "elder-1", "eventId": "evt-7", "status": "RESOLVED"})
        assert watchdog.state.fall_status == FallStatus.NORMAL
        assert watchdog.state.active_fall_event_id is None
    finally:
        await watchdog.close()


async def test_transport_disconnect():
    watchdog, client, _ = _watchdog()
    watchdog.start()
    try:
        await _online(watchdog, client)
        client.fire(DISCONNECT)
        assert watchdog.state.connection == ConnectionState.DISCONNECTED
    finally:
        await watchdog.close()


async def test_foreground_reauthenticates_when_connected():
    lifecycle = AppLifecycle()
    watchdog, client, _ = _watchdog(lifecycle=lifecycle)
    watchdog.start()
    try:
        await _online(watchdog, client)
        client.emitted.clear()

        lifecycle.set_state(AppState.BACKGROUND)
        lifecycle.set_state(AppState.ACTIVE)
        await asyncio.sleep(0)

        assert client.emitted == [("authenticate", {"elderId": "elder-1"})]
        assert client.reconnects == 0
        assert watchdog.state.connection == ConnectionState.CONNECTED_DEVICE_ONLINE
    finally:
        await watchdog.close()


async def test_foreground_reconnects_when_disconnected():
    lifecycle = AppLifecycle()
    watchdog, client, _ = _watchdog(lifecycle=lifecycle)
    watchdog.start()
    try:
        lifecycle.set_state(AppState.INACTIVE)
        lifecycle.set_state(AppState.ACTIVE)
        assert client.reconnects == 1
        assert client.emitted == []
    finally:
        await watchdog.close()


async def test_close_removes_listeners_and_cancels_timer():
    lifecycle = AppLifecycle()
    watchdog, client, _ = _watchdog(lifecycle=lifecycle)
    watchdog.start()
    timer = watchdog._timer
    assert client.listener_count() > 0
    assert lifecycle.listener_count == 1

    await watchdog.close()

    assert client.listener_count() == 0
    assert lifecycle.listener_count == 0
    assert timer.cancelled()
    client.fire("heart_rate_update", {"elderId": "elder-1", "heartRate": 80})
    assert watchdog.state.heart_rate is None


async def test_start_on_connected_client_authenticates_immediately():
    watchdog, client, _ = _watchdog(client=FakeLiveClient(connected=True))
    watchdog.start()
    try:
        await asyncio.sleep(0)
        assert watchdog.state.connection == ConnectionState.CONNECTED_NO_DEVICE
        assert client.emitted == [("authenticate", {"elderId": "elder-1"})]
    finally:
        await watchdog.close()


class FakeServerConnection:
    def __init__(self, messages):
        self.messages = list(messages)
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.messages:
            return self.messages.pop(0)
        # stay open until closed
        while not self.closed:
            await asyncio.sleep(0.01)
        raise StopAsyncIteration

    async def send(self, raw):
        self.sent.append(raw)

    async def close(self):
        self.closed = True


async def test_live_client_dispatches_messages_and_reconnects():
    attempts = []

    def connector(url, open_timeout):
        attempts.append(url)
        if len(attempts) == 1:
            raise OSError("connection refused")
        return FakeServerConnection(['{"event": "heart_rate_update", "data": {"heartRate": 70}}'])

    client = LiveChannelClient(url="ws://test/ws", reconnect_delay=0.01, connector=connector)
    received = []
    connected = asyncio.Event()
    client.on("heart_rate_update", received.append)
    client.on(CONNECT, lambda _data: connected.set())

    client.start()
    await asyncio.wait_for(connected.wait(), timeout=1)
    await asyncio.sleep(0.02)

    assert len(attempts) == 2
    assert received == [{"heartRate": 70}]
    assert await client.emit("authenticate", {"elderId": "elder-1"}) is True

    await client.close()
    assert client.connected is False
