"""MQTT topics and payload schemas for FallHelp devices.

Topic structure:
    device/{device_id}/fall       fall detection (device -> server)
    device/{device_id}/heartrate  heart rate samples (device -> server)
    device/{device_id}/status     heartbeat / online state (device -> server)
    device/{device_id}/config     thresholds and Wi-Fi settings (server -> device)

The device_id segment is the serial number the firmware was flashed with,
e.g. ``ESP32-6C689BDAF380``.
"""

from __future__ import annotations

import json
import math
import re
from enum import Enum
from functools import lru_cache
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fallhelp.shared.errors import MalformedPayloadError


class TelemetryKind(str, Enum):
    FALL = "fall"
    HEART_RATE = "heartrate"
    STATUS = "status"


FALL_WILDCARD = "device/+/fall"
HEART_RATE_WILDCARD = "device/+/heartrate"
STATUS_WILDCARD = "device/+/status"

SUBSCRIPTIONS = {
    FALL_WILDCARD: TelemetryKind.FALL,
    HEART_RATE_WILDCARD: TelemetryKind.HEART_RATE,
    STATUS_WILDCARD: TelemetryKind.STATUS,
}

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def config_topic(device_id: str) -> str:
    return f"device/{device_id}/config"


def telemetry_topic(device_id: str, kind: TelemetryKind) -> str:
    return f"device/{device_id}/{kind.value}"


@lru_cache(maxsize=64)
def _compile_topic_regex(topic_filter: str) -> re.Pattern:
    """Convert an MQTT topic filter to a compiled regex.

    + -> [^/]+    (one level)
    # -> .*       (zero or more levels, must be last)
    """
    regex_parts: list[str] = []
    for part in topic_filter.split("/"):
        if part == "+":
            regex_parts.append("[^/]+")
        elif part == "#":
            regex_parts.append(".*")
            break
        else:
            regex_parts.append(re.escape(part))
    return re.compile("^" + "/".join(regex_parts) + "$")


def mqtt_topic_matches(topic_filter: str, topic: str) -> bool:
    return _compile_topic_regex(topic_filter).match(topic) is not None


def extract_device_id(topic: str) -> Optional[str]:
    """Return the device identifier from ``device/{id}/...`` or None."""
    parts = topic.split("/")
    if len(parts) < 2 or parts[0] != "device":
        return None
    device_id = parts[1]
    if not _DEVICE_ID_RE.match(device_id):
        return None
    return device_id


def parse_topic(topic: str) -> Optional[tuple[str, TelemetryKind]]:
    """Resolve an inbound topic to (device_id, kind); None if it is not routable."""
    device_id = extract_device_id(topic)
    if device_id is None:
        return None
    for topic_filter, kind in SUBSCRIPTIONS.items():
        if mqtt_topic_matches(topic_filter, topic):
            return device_id, kind
    return None


DeviceTimestamp = Union[int, float, str, None]


class _DevicePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: DeviceTimestamp = None


def _finite(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    return value


class FallPayload(_DevicePayload):
    acceleration_x: float = Field(alias="accelerationX")
    acceleration_y: float = Field(alias="accelerationY")
    acceleration_z: float = Field(alias="accelerationZ")
    magnitude: float

    @field_validator("acceleration_x", "acceleration_y", "acceleration_z", "magnitude")
    @classmethod
    def _check_finite(cls, v: float) -> float:
        return _finite(v)


class HeartRatePayload(_DevicePayload):
    heart_rate: float = Field(alias="heartRate", ge=0)
    is_abnormal: Optional[bool] = Field(default=None, alias="isAbnormal")

    @field_validator("heart_rate")
    @classmethod
    def _check_finite(cls, v: float) -> float:
        return _finite(v)


class StatusPayload(_DevicePayload):
    online: bool
    signal_strength: Optional[int] = Field(default=None, alias="signalStrength")
    firmware_version: Optional[str] = Field(default=None, alias="firmwareVersion", max_length=64)
    ip: Optional[str] = Field(default=None, max_length=64)

    @field_validator("firmware_version", "ip")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class DeviceConfigPayload(BaseModel):
    """Server -> device configuration message."""

    model_config = ConfigDict(populate_by_name=True)

    fall_threshold: float = Field(alias="fallThreshold", gt=0)
    hr_low_threshold: int = Field(alias="hrLowThreshold", ge=0)
    hr_high_threshold: int = Field(alias="hrHighThreshold", gt=0)
    sample_interval: Optional[int] = Field(default=None, alias="sampleInterval", gt=0)
    wifi_ssid: Optional[str] = Field(default=None, alias="wifiSSID")
    wifi_password: Optional[str] = Field(default=None, alias="wifiPassword")

    @field_validator("hr_high_threshold")
    @classmethod
    def _high_above_low(cls, v: int, info) -> int:
        low = info.data.get("hr_low_threshold")
        if low is not None and v <= low:
            raise ValueError("hrHighThreshold must be greater than hrLowThreshold")
        return v

    def to_wire(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True))


PAYLOAD_MODELS: dict[TelemetryKind, type[_DevicePayload]] = {
    TelemetryKind.FALL: FallPayload,
    TelemetryKind.HEART_RATE: HeartRatePayload,
    TelemetryKind.STATUS: StatusPayload,
}


def decode_payload(kind: TelemetryKind, raw: bytes) -> _DevicePayload:
    """Decode and validate a raw MQTT payload. Raises MalformedPayloadError."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayloadError(kind.value, f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError(kind.value, "payload is not a JSON object")
    try:
        return PAYLOAD_MODELS[kind].model_validate(data)
    except ValidationError as exc:
        raise MalformedPayloadError(kind.value, str(exc.errors()[:3])) from exc
