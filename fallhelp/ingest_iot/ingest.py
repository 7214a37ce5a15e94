import asyncio
import logging
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import paho.mqtt.client as mqtt

from fallhelp.ingest_iot.handlers import HandlerOutcome
from fallhelp.ingest_iot.topics import (
    SUBSCRIPTIONS,
    DeviceConfigPayload,
    TelemetryKind,
    config_topic,
    decode_payload,
    parse_topic,
)
from fallhelp.shared.config import env_flag, optional_env
from fallhelp.shared.errors import MalformedPayloadError, PersistenceError
from fallhelp.shared.logging import device_id_var, log_event, log_exception, trace_id_var
from fallhelp.shared.metrics import (
    handler_duration_seconds,
    ingest_messages_total,
    ingest_persist_retries_total,
    ingest_queue_depth,
    mqtt_connected,
)
from fallhelp.shared.sampled_logger import get_sampled_logger
from fallhelp.shared.utils import utcnow

logger = logging.getLogger(__name__)

MQTT_HOST = optional_env("MQTT_HOST", "localhost")
MQTT_PORT = int(optional_env("MQTT_PORT", "1883"))
MQTT_USERNAME = optional_env("MQTT_USERNAME")
MQTT_PASSWORD = optional_env("MQTT_PASSWORD")
MQTT_KEEPALIVE = int(optional_env("MQTT_KEEPALIVE", "60"))
MQTT_DISABLED = env_flag("MQTT_DISABLED")

INGEST_WORKER_COUNT = int(optional_env("INGEST_WORKER_COUNT", "4"))
INGEST_QUEUE_SIZE = int(optional_env("INGEST_QUEUE_SIZE", "10000"))
INGEST_PERSIST_RETRIES = int(optional_env("INGEST_PERSIST_RETRIES", "3"))
INGEST_RETRY_BACKOFF_SECONDS = float(optional_env("INGEST_RETRY_BACKOFF_SECONDS", "0.5"))
INGEST_DRAIN_TIMEOUT_SECONDS = float(optional_env("INGEST_DRAIN_TIMEOUT_SECONDS", "5"))

SUBSCRIBE_QOS = 1

# Event type recorded when a message is lost after retries.
_LOST_EVENT_TYPE = {
    TelemetryKind.FALL: "FALL",
    TelemetryKind.HEART_RATE: "HEART_RATE",
    TelemetryKind.STATUS: "DEVICE_STATUS",
}


@dataclass
class RoutedMessage:
    """A decoded telemetry message waiting for its shard worker."""
    kind: TelemetryKind
    device_id: str
    payload: Any
    received_at: datetime
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])


class TelemetryRouter:
    """Subscribes to device telemetry and drives the per-kind handlers.

    Messages are sharded by device identifier onto single-consumer queues,
    so one device's messages are handled in arrival order while different
    devices proceed in parallel. The paho network thread only decodes and
    hands messages over to the event loop. Alert fan-out runs as background
    tasks owned by the handlers, outside the shard workers.
    """

    def __init__(
        self,
        handlers,
        worker_count: int = INGEST_WORKER_COUNT,
        queue_size: int = INGEST_QUEUE_SIZE,
        persist_retries: int = INGEST_PERSIST_RETRIES,
        retry_backoff: float = INGEST_RETRY_BACKOFF_SECONDS,
        sampled_logger=None,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.handlers = handlers
        self.queues: list[asyncio.Queue] = [asyncio.Queue(maxsize=queue_size) for _ in range(worker_count)]
        self.persist_retries = max(0, persist_retries)
        self.retry_backoff = retry_backoff
        self.sampled = sampled_logger or get_sampled_logger()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.client: Optional[mqtt.Client] = None
        self.connected = False
        self._workers: list[asyncio.Task] = []

        self.msg_received = 0
        self.msg_enqueued = 0
        self.msg_dropped = 0
        self.msg_handled = 0
        self.msg_failed = 0

    def decode(self, topic: str, raw: bytes, received_at: Optional[datetime] = None) -> Optional[RoutedMessage]:
        """Turn a raw MQTT message into a RoutedMessage, or None if it is dropped."""
        self.msg_received += 1
        parsed = parse_topic(topic)
        if parsed is None:
            self.msg_dropped += 1
            ingest_messages_total.labels(kind="unknown", result="bad_topic").inc()
            self.sampled.log("bad_topic", f"unroutable topic {topic!r}", extra={"topic": topic})
            return None
        device_id, kind = parsed
        try:
            payload = decode_payload(kind, raw)
        except MalformedPayloadError as exc:
            self.msg_dropped += 1
            ingest_messages_total.labels(kind=kind.value, result="malformed").inc()
            self.sampled.log(
                "malformed_payload",
                f"dropping {kind.value} from {device_id}: {exc.reason}",
                extra={"serial_number": device_id, "kind": kind.value},
            )
            return None
        return RoutedMessage(
            kind=kind,
            device_id=device_id,
            payload=payload,
            received_at=received_at or utcnow(),
        )

    def shard_for(self, device_id: str) -> int:
        return zlib.crc32(device_id.encode("utf-8")) % len(self.queues)

    def submit(self, message: RoutedMessage) -> bool:
        shard = self.shard_for(message.device_id)
        queue = self.queues[shard]
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            self.msg_dropped += 1
            ingest_messages_total.labels(kind=message.kind.value, result="queue_full").inc()
            self.sampled.log(
                "queue_full",
                f"shard {shard} full, dropping {message.kind.value} from {message.device_id}",
                extra={"shard": shard},
            )
            return False
        self.msg_enqueued += 1
        ingest_queue_depth.labels(shard=str(shard)).set(queue.qsize())
        return True

    async def worker(self, shard: int) -> None:
        queue = self.queues[shard]
        while True:
            message = await queue.get()
            try:
                await self.process(message)
            finally:
                queue.task_done()
                ingest_queue_depth.labels(shard=str(shard)).set(queue.qsize())

    async def process(self, message: RoutedMessage) -> Optional[HandlerOutcome]:
        """Run the handler, retrying retryable store failures with a fixed backoff."""
        trace_token = trace_id_var.set(message.trace_id)
        device_token = device_id_var.set(message.device_id)
        kind = message.kind.value
        try:
            attempt = 0
            while True:
                try:
                    with handler_duration_seconds.labels(kind=kind).time():
                        outcome = await self.handlers.handle(
                            message.kind, message.device_id, message.payload, message.received_at
                        )
                    self.msg_handled += 1
                    ingest_messages_total.labels(kind=kind, result=outcome.value).inc()
                    return outcome
                except PersistenceError as exc:
                    if exc.retryable and attempt < self.persist_retries:
                        attempt += 1
                        ingest_persist_retries_total.labels(kind=kind).inc()
                        log_event(
                            logger,
                            "store failure, retrying handler",
                            level="WARNING",
                            kind=kind,
                            attempt=attempt,
                            error=str(exc),
                        )
                        await asyncio.sleep(self.retry_backoff)
                        continue
                    self.msg_failed += 1
                    ingest_messages_total.labels(kind=kind, result="persist_failed").inc()
                    log_exception(
                        logger,
                        "telemetry lost after store retries",
                        exc,
                        {
                            "kind": kind,
                            "event_type": _LOST_EVENT_TYPE[message.kind],
                            "attempts": attempt + 1,
                            "received_at": message.received_at.isoformat(),
                        },
                    )
                    return None
                except Exception as exc:
                    self.msg_failed += 1
                    ingest_messages_total.labels(kind=kind, result="handler_error").inc()
                    log_exception(logger, "telemetry handler failed", exc, {"kind": kind})
                    return None
        finally:
            device_id_var.reset(device_token)
            trace_id_var.reset(trace_token)

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        for queue in self.queues:
            await queue.join()

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            log_event(logger, "mqtt connect refused", level="ERROR", reason=str(reason_code))
            return
        self.connected = True
        mqtt_connected.set(1)
        # subscriptions are re-issued on every reconnect
        client.subscribe([(topic, SUBSCRIBE_QOS) for topic in SUBSCRIPTIONS])
        log_event(logger, "mqtt connected", host=MQTT_HOST, port=MQTT_PORT, topics=list(SUBSCRIPTIONS))

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self.connected = False
        mqtt_connected.set(0)
        log_event(logger, "mqtt disconnected", level="WARNING", reason=str(reason_code))

    def on_message(self, client, userdata, msg):
        message = self.decode(msg.topic, msg.payload)
        if message is None:
            return
        if self.loop is None:
            self.msg_dropped += 1
            return
        self.loop.call_soon_threadsafe(self.submit, message)

    def publish_device_config(self, device_id: str, config: DeviceConfigPayload) -> bool:
        """Send thresholds / Wi-Fi settings to ``device/{id}/config`` at QoS 1."""
        topic = config_topic(device_id)
        if self.client is None or not self.connected:
            log_event(logger, "mqtt not connected, config not sent", level="WARNING", topic=topic)
            return False
        info = self.client.publish(topic, config.to_wire(), qos=SUBSCRIBE_QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log_event(logger, "config publish failed", level="ERROR", topic=topic, rc=info.rc)
            return False
        log_event(logger, "config published", topic=topic)
        return True

    async def start(self, connect: bool = not MQTT_DISABLED) -> None:
        self.loop = asyncio.get_running_loop()
        self._workers = [
            asyncio.create_task(self.worker(i), name=f"ingest-shard-{i}") for i in range(len(self.queues))
        ]
        if not connect:
            log_event(logger, "mqtt disabled, router running without a broker", level="WARNING")
            return
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"fallhelp-core-{uuid.uuid4().hex[:8]}",
            clean_session=True,
        )
        if MQTT_USERNAME:
            client.username_pw_set(MQTT_USERNAME, MQTT_PASSWORD or None)
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        client.connect_async(MQTT_HOST, MQTT_PORT, keepalive=MQTT_KEEPALIVE)
        client.loop_start()
        self.client = client

    async def stop(self, drain_timeout: float = INGEST_DRAIN_TIMEOUT_SECONDS) -> None:
        """Stop intake, finish queued telemetry and in-flight fan-outs, then cancel workers."""
        if self.client is not None:
            self.client.disconnect()
            self.client.loop_stop()
            self.client = None
        self.connected = False
        mqtt_connected.set(0)

        if self._workers:
            try:
                await asyncio.wait_for(self.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                log_event(logger, "ingest queues not drained before shutdown", level="WARNING")
        abandoned = sum(q.qsize() for q in self.queues)
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if abandoned:
            self.msg_dropped += abandoned
            ingest_messages_total.labels(kind="unknown", result="shutdown").inc(abandoned)
            log_event(logger, "queued telemetry dropped at shutdown", level="ERROR", count=abandoned)

        await self.handlers.drain(timeout=drain_timeout)

    def stats(self) -> dict:
        return {
            "mqtt_connected": self.connected,
            "queue_depths": [q.qsize() for q in self.queues],
            "counters": {
                "messages_received": self.msg_received,
                "messages_enqueued": self.msg_enqueued,
                "messages_dropped": self.msg_dropped,
                "messages_handled": self.msg_handled,
                "messages_failed": self.msg_failed,
            },
        }
