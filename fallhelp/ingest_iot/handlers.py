"""Per-kind telemetry handlers.

Each handler resolves the device, asks the evaluator for a decision, stores
the resulting event and hands it to the dispatcher. ``received_at`` is the
server time the router stamped on the message; it is reused across retries
so a re-run produces the same event dedup key.

Store failures surface as PersistenceError for the router to retry.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from fallhelp.db.directory import heart_rate_thresholds
from fallhelp.dispatcher.dispatcher import AlertContext
from fallhelp.evaluator_iot.evaluator import (
    evaluate_fall,
    evaluate_heart_rate,
    evaluate_status,
    was_online,
)
from fallhelp.ingest_iot.topics import (
    FallPayload,
    HeartRatePayload,
    StatusPayload,
    TelemetryKind,
)
from fallhelp.live.publisher import (
    DEVICE_STATUS_UPDATE,
    FALL_DETECTED,
    HEART_RATE_ALERT,
    HEART_RATE_UPDATE,
    UNKNOWN_ELDER_NAME,
    device_status_message,
    fall_detected_message,
    heart_rate_alert_message,
    heart_rate_update_message,
)
from fallhelp.shared.logging import log_event, log_exception
from fallhelp.shared.models import Device, NewEvent
from fallhelp.shared.sampled_logger import get_sampled_logger
from fallhelp.shared.utils import is_plausible_timestamp, parse_device_timestamp

logger = logging.getLogger(__name__)


class HandlerOutcome(str, Enum):
    EVENT_CREATED = "event_created"
    LIVE_ONLY = "live_only"
    STATUS_UPDATED = "status_updated"
    UNKNOWN_DEVICE = "unknown_device"
    UNPAIRED_DEVICE = "unpaired_device"


def _elder_name(device: Device) -> str:
    return device.elder.full_name if device.elder is not None else UNKNOWN_ELDER_NAME


class TelemetryHandlers:
    def __init__(self, directory, event_store, dispatcher, publisher, sampled_logger=None):
        self.directory = directory
        self.event_store = event_store
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.sampled = sampled_logger or get_sampled_logger()
        self._fanouts: set[asyncio.Task] = set()

    def _fan_out(self, event, context: AlertContext, notify: bool) -> asyncio.Task:
        """Dispatch in the background once the event row exists.

        The shard worker moves on to the next message immediately; a slow push
        batch for one elder must not delay telemetry from other devices.
        """
        task = asyncio.create_task(
            self.dispatcher.dispatch(event, context, notify=notify),
            name=f"fanout-{event.id}",
        )
        self._fanouts.add(task)
        task.add_done_callback(self._fan_out_done)
        return task

    def _fan_out_done(self, task: asyncio.Task) -> None:
        self._fanouts.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_exception(logger, "alert fan-out failed", exc, {"task": task.get_name()})

    @property
    def pending_fanouts(self) -> int:
        return len(self._fanouts)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight fan-outs; cancel whatever is left after ``timeout``."""
        pending = set(self._fanouts)
        if not pending:
            return 0
        done, unfinished = await asyncio.wait(pending, timeout=timeout)
        if unfinished:
            log_event(
                logger,
                "abandoning unfinished alert fan-outs",
                level="WARNING",
                count=len(unfinished),
            )
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*unfinished, return_exceptions=True)
        return len(done)

    async def handle(self, kind: TelemetryKind, device_id: str, payload, received_at: datetime) -> HandlerOutcome:
        if kind == TelemetryKind.FALL:
            return await self.handle_fall(device_id, payload, received_at)
        if kind == TelemetryKind.HEART_RATE:
            return await self.handle_heart_rate(device_id, payload, received_at)
        if kind == TelemetryKind.STATUS:
            return await self.handle_status(device_id, payload, received_at)
        raise ValueError(f"unsupported telemetry kind: {kind}")

    async def _resolve(self, device_id: str, kind: TelemetryKind, require_pairing: bool = True):
        device = await self.directory.get_device_by_serial(device_id)
        if device is None:
            self.sampled.log(
                "unknown_device",
                f"device {device_id} not found ({kind.value})",
                extra={"serial_number": device_id, "kind": kind.value},
            )
            return None, HandlerOutcome.UNKNOWN_DEVICE
        if require_pairing and device.elder_id is None:
            self.sampled.log(
                "unpaired_device",
                f"device {device_id} not paired with any elder ({kind.value})",
                extra={"serial_number": device_id, "kind": kind.value},
            )
            return device, HandlerOutcome.UNPAIRED_DEVICE
        return device, None

    async def handle_fall(self, device_id: str, payload: FallPayload, received_at: datetime) -> HandlerOutcome:
        device, rejected = await self._resolve(device_id, TelemetryKind.FALL)
        if rejected is not None:
            return rejected

        occurred_at = parse_device_timestamp(payload.timestamp)
        if not is_plausible_timestamp(occurred_at, received_at):
            log_event(
                logger,
                "fall timestamp not plausible, using server time",
                level="WARNING",
                raw_timestamp=payload.timestamp,
            )
            occurred_at = received_at

        decision = evaluate_fall(payload.magnitude)
        event = await self.event_store.create_event(
            NewEvent(
                elder_id=device.elder_id,
                device_id=device.id,
                type=decision.event_type,
                severity=decision.severity,
                timestamp=occurred_at,
                accelerometer_x=payload.acceleration_x,
                accelerometer_y=payload.acceleration_y,
                accelerometer_z=payload.acceleration_z,
                metadata=dict(decision.metadata),
            )
        )
        log_event(logger, "fall event created", level="WARNING", event_id=event.id, elder_id=event.elder_id)

        self._fan_out(
            event,
            AlertContext(
                live_event=FALL_DETECTED,
                live_data=fall_detected_message(event, device, payload.magnitude),
                elder_name=_elder_name(device),
            ),
            notify=decision.notify,
        )
        return HandlerOutcome.EVENT_CREATED

    async def handle_heart_rate(
        self, device_id: str, payload: HeartRatePayload, received_at: datetime
    ) -> HandlerOutcome:
        device, rejected = await self._resolve(device_id, TelemetryKind.HEART_RATE)
        if rejected is not None:
            return rejected

        # device clocks are boot-relative; heart rate always uses server time
        bpm = payload.heart_rate
        low, high = heart_rate_thresholds(device)
        decision = evaluate_heart_rate(bpm, low, high)

        if not decision.alertable:
            await self.publisher.publish(
                HEART_RATE_UPDATE,
                device.elder_id,
                heart_rate_update_message(device, bpm, received_at),
            )
            return HandlerOutcome.LIVE_ONLY

        event = await self.event_store.create_event(
            NewEvent(
                elder_id=device.elder_id,
                device_id=device.id,
                type=decision.event_type,
                severity=decision.severity,
                timestamp=received_at,
                value=bpm,
                metadata=dict(decision.metadata),
            )
        )
        direction = decision.metadata["direction"]
        log_event(
            logger,
            "abnormal heart rate event created",
            level="WARNING",
            event_id=event.id,
            heart_rate=bpm,
            direction=direction,
        )
        self._fan_out(
            event,
            AlertContext(
                live_event=HEART_RATE_ALERT,
                live_data=heart_rate_alert_message(event, device, bpm, direction),
                elder_name=_elder_name(device),
            ),
            notify=decision.notify,
        )
        return HandlerOutcome.EVENT_CREATED

    async def handle_status(self, device_id: str, payload: StatusPayload, received_at: datetime) -> HandlerOutcome:
        device, rejected = await self._resolve(device_id, TelemetryKind.STATUS, require_pairing=False)
        if rejected is not None:
            return rejected

        previously_online = was_online(device.last_online, received_at)
        paired = device.elder_id is not None
        decision = evaluate_status(previously_online, payload.online, device.last_online)

        # the event is written before the device row so a retry re-reads the same last_online
        event = None
        if paired and decision.alertable:
            event = await self.event_store.create_event(
                NewEvent(
                    elder_id=device.elder_id,
                    device_id=device.id,
                    type=decision.event_type,
                    severity=decision.severity,
                    timestamp=received_at,
                    metadata=dict(decision.metadata),
                )
            )
            log_event(
                logger,
                "device transition event created",
                event_id=event.id,
                event_type=event.type.value,
                was_online=previously_online,
                online=payload.online,
            )

        firmware = await self.directory.update_device_status(
            device,
            online=payload.online,
            seen_at=received_at,
            firmware_version=payload.firmware_version,
            ip_address=payload.ip if payload.online else None,
        )

        if not paired:
            log_event(logger, "status recorded for unpaired device", level="DEBUG", serial_number=device_id)
            return HandlerOutcome.UNPAIRED_DEVICE

        live_data = device_status_message(
            device,
            online=payload.online,
            timestamp=received_at,
            signal_strength=payload.signal_strength,
            firmware_version=firmware,
            event=event,
        )
        if event is not None:
            self._fan_out(
                event,
                AlertContext(
                    live_event=DEVICE_STATUS_UPDATE,
                    live_data=live_data,
                    elder_name=_elder_name(device),
                ),
                notify=decision.notify,
            )
            return HandlerOutcome.EVENT_CREATED

        await self.publisher.publish(DEVICE_STATUS_UPDATE, device.elder_id, live_data)
        return HandlerOutcome.STATUS_UPDATED
