import asyncio
import json
import logging
import random
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from fallhelp.ingest_iot.handlers import HandlerOutcome
from fallhelp.ingest_iot.ingest import RoutedMessage, TelemetryRouter
from fallhelp.ingest_iot.topics import SUBSCRIPTIONS, DeviceConfigPayload, TelemetryKind
from fallhelp.shared.errors import PersistenceError
from tests.factories import FIXED_NOW

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


class RecordingHandlers:
    def __init__(self, failures=0, retryable=True, jitter=False):
        self.calls = []
        self.failures = failures
        self.retryable = retryable
        self.jitter = jitter
        self.drained = 0

    async def handle(self, kind, device_id, payload, received_at):
        self.calls.append((kind, device_id, payload, received_at))
        if self.jitter:
            await asyncio.sleep(random.random() / 1000)
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("connection reset", retryable=self.retryable)
        return HandlerOutcome.LIVE_ONLY

    async def drain(self, timeout=None):
        self.drained += 1
        return 0


def _router(handlers, sampled, **kwargs):
    kwargs.setdefault("worker_count", 4)
    kwargs.setdefault("retry_backoff", 0)
    return TelemetryRouter(handlers, sampled_logger=sampled, **kwargs)


def _hr(bpm, seq=None):
    payload = {"heartRate": bpm}
    if seq is not None:
        payload["timestamp"] = seq
    return json.dumps(payload).encode()


async def test_bad_topic_is_dropped(sampled):
    handlers = RecordingHandlers()
    router = _router(handlers, sampled)

    assert router.decode("sensors/abc/fall", b"{}") is None
    assert sampled.types() == ["bad_topic"]
    assert router.msg_dropped == 1


async def test_malformed_payload_never_reaches_handlers(sampled):
    handlers = RecordingHandlers()
    router = _router(handlers, sampled)
    await router.start(connect=False)
    try:
        router.on_message(None, None, SimpleNamespace(topic="device/ESP32-1/heartrate", payload=b"{oops"))
        router.on_message(None, None, SimpleNamespace(topic="device/ESP32-1/heartrate", payload=_hr(-5)))
        await asyncio.sleep(0)
        await router.join()
    finally:
        await router.stop()

    assert handlers.calls == []
    assert sampled.types() == ["malformed_payload", "malformed_payload"]
    assert router.stats()["counters"]["messages_dropped"] == 2


async def test_decode_stamps_received_at(sampled):
    router = _router(RecordingHandlers(), sampled)

    message = router.decode("device/ESP32-1/heartrate", _hr(70), received_at=FIXED_NOW)

    assert message.kind == TelemetryKind.HEART_RATE
    assert message.device_id == "ESP32-1"
    assert message.received_at == FIXED_NOW
    assert message.trace_id


async def test_same_device_always_lands_on_same_shard(sampled):
    router = _router(RecordingHandlers(), sampled, worker_count=8)
    assert router.shard_for("ESP32-1") == router.shard_for("ESP32-1")
    assert 0 <= router.shard_for("ESP32-2") < 8


async def test_per_device_order_is_preserved(sampled):
    handlers = RecordingHandlers(jitter=True)
    router = _router(handlers, sampled, worker_count=3)
    devices = [f"ESP32-{i}" for i in range(6)]
    await router.start(connect=False)
    try:
        for seq in range(20):
            for device_id in devices:
                message = router.decode(f"device/{device_id}/heartrate", _hr(60 + seq, seq), received_at=FIXED_NOW)
                assert router.submit(message)
        await router.join()
    finally:
        await router.stop()

    for device_id in devices:
        seen = [c[2].timestamp for c in handlers.calls if c[1] == device_id]
        assert seen == list(range(20))


async def test_persistence_error_is_retried_with_same_received_at(sampled):
    handlers = RecordingHandlers(failures=2)
    router = _router(handlers, sampled, persist_retries=3)
    message = router.decode("device/ESP32-1/heartrate", _hr(72), received_at=FIXED_NOW)

    outcome = await router.process(message)

    assert outcome == HandlerOutcome.LIVE_ONLY
    assert len(handlers.calls) == 3
    assert {c[3] for c in handlers.calls} == {FIXED_NOW}
    assert router.msg_handled == 1


async def test_retries_exhausted_counts_failure(sampled):
    handlers = RecordingHandlers(failures=10)
    router = _router(handlers, sampled, persist_retries=2)
    message = router.decode("device/ESP32-1/fall", json.dumps(
        {"accelerationX": 1, "accelerationY": 1, "accelerationZ": 3, "magnitude": 3.3}
    ).encode())

    outcome = await router.process(message)

    assert outcome is None
    assert len(handlers.calls) == 3
    assert router.msg_failed == 1


async def test_non_retryable_error_is_not_retried(sampled):
    handlers = RecordingHandlers(failures=1, retryable=False)
    router = _router(handlers, sampled, persist_retries=3)
    message = router.decode("device/ESP32-1/heartrate", _hr(72))

    assert await router.process(message) is None
    assert len(handlers.calls) == 1


async def test_unexpected_handler_error_is_contained(sampled):
    handlers = RecordingHandlers()

    async def explode(*args):
        raise KeyError("boom")

    handlers.handle = explode
    router = _router(handlers, sampled)

    assert await router.process(router.decode("device/ESP32-1/heartrate", _hr(72))) is None
    assert router.msg_failed == 1


async def test_full_queue_drops_message(sampled):
    router = _router(RecordingHandlers(), sampled, worker_count=1, queue_size=1)
    message = router.decode("device/ESP32-1/heartrate", _hr(72))

    assert router.submit(message) is True
    assert router.submit(message) is False
    assert "queue_full" in sampled.types()


async def test_on_message_without_loop_drops(sampled):
    router = _router(RecordingHandlers(), sampled)
    router.on_message(None, None, SimpleNamespace(topic="device/ESP32-1/heartrate", payload=_hr(72)))
    assert router.msg_dropped == 1
    assert router.msg_enqueued == 0


async def test_on_connect_subscribes_all_topics(sampled):
    router = _router(RecordingHandlers(), sampled)
    client = MagicMock()

    router.on_connect(client, None, None, SimpleNamespace(is_failure=False))

    assert router.connected is True
    topics = client.subscribe.call_args.args[0]
    assert {t for t, _ in topics} == set(SUBSCRIPTIONS)
    assert {qos for _, qos in topics} == {1}


async def test_on_connect_failure_does_not_subscribe(sampled):
    router = _router(RecordingHandlers(), sampled)
    client = MagicMock()

    router.on_connect(client, None, None, SimpleNamespace(is_failure=True))

    assert router.connected is False
    client.subscribe.assert_not_called()


async def test_publish_device_config(sampled):
    router = _router(RecordingHandlers(), sampled)
    config = DeviceConfigPayload(fall_threshold=2.5, hr_low_threshold=50, hr_high_threshold=120)

    assert router.publish_device_config("ESP32-1", config) is False

    router.client = MagicMock()
    router.client.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)
    router.connected = True
    assert router.publish_device_config("ESP32-1", config) is True
    topic, body = router.client.publish.call_args.args
    assert topic == "device/ESP32-1/config"
    assert json.loads(body)["hrHighThreshold"] == 120
    assert router.client.publish.call_args.kwargs["qos"] == 1


async def test_worker_count_must_be_positive(sampled):
    with pytest.raises(ValueError):
        TelemetryRouter(RecordingHandlers(), worker_count=0, sampled_logger=sampled)


async def test_routed_message_trace_ids_are_unique():
    a = RoutedMessage(TelemetryKind.STATUS, "d", None, FIXED_NOW)
    b = RoutedMessage(TelemetryKind.STATUS, "d", None, FIXED_NOW)
    assert a.trace_id != b.trace_id


async def test_stop_finishes_queued_messages_first(sampled):
    handlers = RecordingHandlers(jitter=True)
    router = _router(handlers, sampled, worker_count=2)
    await router.start(connect=False)
    for seq in range(10):
        assert router.submit(router.decode("device/ESP32-1/heartrate", _hr(70, seq), received_at=FIXED_NOW))

    await router.stop()

    assert len(handlers.calls) == 10
    assert router.msg_dropped == 0
    assert handlers.drained == 1


async def test_stop_counts_messages_left_after_drain_timeout(sampled, caplog):
    handlers = RecordingHandlers()
    blocked = asyncio.Event()

    async def hang(*args):
        await blocked.wait()

    handlers.handle = hang
    router = _router(handlers, sampled, worker_count=1)
    await router.start(connect=False)
    for seq in range(3):
        router.submit(router.decode("device/ESP32-1/heartrate", _hr(72, seq), received_at=FIXED_NOW))
    await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="fallhelp.ingest_iot.ingest"):
        await router.stop(drain_timeout=0.05)

    assert router.msg_dropped == 2
    assert "queued telemetry dropped at shutdown" in caplog.text
    assert handlers.drained == 1
