"""Typed live-channel messages addressed to elder rooms.

Every message is ``{"event": <name>, "data": {...}}``. Payload keys are
camelCase because the caregiver app reads them directly.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fallhelp.live.ws_manager import ConnectionManager, elder_room
from fallhelp.shared.metrics import live_messages_total
from fallhelp.shared.models import Device, Event
from fallhelp.shared.utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

FALL_DETECTED = "fall_detected"
HEART_RATE_ALERT = "heart_rate_alert"
HEART_RATE_UPDATE = "heart_rate_update"
DEVICE_STATUS_UPDATE = "device_status_update"
EVENT_STATUS_CHANGED = "event_status_changed"
SYSTEM_MESSAGE = "system_message"

UNKNOWN_ELDER_NAME = "Unknown"


def device_fields(device: Device) -> dict:
    elder_name = device.elder.full_name if device.elder is not None else UNKNOWN_ELDER_NAME
    return {
        "elderId": device.elder_id,
        "elderName": elder_name,
        "deviceId": device.id,
        "deviceCode": device.device_code,
    }


def fall_detected_message(event: Event, device: Device, magnitude: Optional[float]) -> dict:
    return {
        "eventId": event.id,
        **device_fields(device),
        "timestamp": format_timestamp(event.timestamp),
        "severity": event.severity.value,
        "accelerationMagnitude": magnitude,
    }


def heart_rate_alert_message(event: Event, device: Device, heart_rate: float, direction: str) -> dict:
    return {
        "eventId": event.id,
        **device_fields(device),
        "timestamp": format_timestamp(event.timestamp),
        "heartRate": heart_rate,
        "severity": event.severity.value,
        "type": direction,
    }


def heart_rate_update_message(device: Device, heart_rate: float, timestamp: datetime) -> dict:
    return {
        **device_fields(device),
        "timestamp": format_timestamp(timestamp),
        "heartRate": heart_rate,
    }


def device_status_message(
    device: Device,
    online: bool,
    timestamp: datetime,
    signal_strength: Optional[int] = None,
    firmware_version: Optional[str] = None,
    event: Optional[Event] = None,
) -> dict:
    data = {
        **device_fields(device),
        "online": online,
        "signalStrength": signal_strength,
        "firmwareVersion": firmware_version,
        "timestamp": format_timestamp(timestamp),
    }
    if event is not None:
        data["eventId"] = event.id
        data["alert"] = event.type.value
    return data


class LivePublisher:
    """Publishes live messages through the in-process connection manager."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def publish(self, event_name: str, elder_id: str, data: dict) -> int:
        delivered = await self.manager.emit_to_room(elder_room(elder_id), event_name, data)
        live_messages_total.labels(message=event_name).inc()
        logger.debug(
            "live message published",
            extra={"live_event": event_name, "elder_id": elder_id, "delivered": delivered},
        )
        return delivered

    async def event_status_changed(
        self,
        event_id: str,
        elder_id: str,
        status: str,
        timestamp: Optional[datetime] = None,
    ) -> int:
        data = {
            "eventId": event_id,
            "elderId": elder_id,
            "status": status,
            "timestamp": format_timestamp(timestamp or utcnow()),
        }
        return await self.publish(EVENT_STATUS_CHANGED, elder_id, data)

    async def system_message(self, message: str, data: Any = None) -> int:
        payload = {"message": message, "data": data, "timestamp": format_timestamp(utcnow())}
        delivered = await self.manager.broadcast(SYSTEM_MESSAGE, payload)
        live_messages_total.labels(message=SYSTEM_MESSAGE).inc()
        return delivered
