"""Domain records shared by the router, store, dispatcher and live channel."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class DeviceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"
    PAIRED = "PAIRED"
    UNPAIRED = "UNPAIRED"


class WifiStatus(str, Enum):
    CONFIGURING = "CONFIGURING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class AccessLevel(str, Enum):
    OWNER = "OWNER"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class EventType(str, Enum):
    FALL = "FALL"
    HEART_RATE_LOW = "HEART_RATE_LOW"
    HEART_RATE_HIGH = "HEART_RATE_HIGH"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"
    DEVICE_ONLINE = "DEVICE_ONLINE"


class Severity(str, Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class NotificationType(str, Enum):
    FALL_DETECTED = "FALL_DETECTED"
    HEART_RATE_ALERT = "HEART_RATE_ALERT"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"


@dataclass
class DeviceConfig:
    fall_threshold: float = 2.5
    hr_low_threshold: int = 50
    hr_high_threshold: int = 120
    sample_interval: int = 1000
    wifi_status: WifiStatus = WifiStatus.CONFIGURING
    ip_address: Optional[str] = None


@dataclass
class Elder:
    id: str
    first_name: str
    last_name: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Device:
    """A device as seen by the router: the record, its config and paired elder."""

    id: str
    serial_number: str
    device_code: str
    status: DeviceStatus
    elder_id: Optional[str] = None
    last_online: Optional[datetime] = None
    firmware_version: Optional[str] = None
    config: Optional[DeviceConfig] = None
    elder: Optional[Elder] = None

    @property
    def is_paired(self) -> bool:
        return self.elder_id is not None and self.elder is not None


@dataclass
class Caregiver:
    user_id: str
    access_level: AccessLevel
    push_token: Optional[str] = None


@dataclass
class ElderWithCaregivers:
    elder: Elder
    caregivers: list[Caregiver] = field(default_factory=list)


@dataclass
class NewEvent:
    """Event fields supplied by a handler before the store assigns an id."""

    elder_id: str
    device_id: str
    type: EventType
    severity: Severity
    timestamp: datetime
    value: Optional[float] = None
    accelerometer_x: Optional[float] = None
    accelerometer_y: Optional[float] = None
    accelerometer_z: Optional[float] = None
    metadata: dict = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return f"{self.device_id}:{self.type.value}:{self.timestamp.isoformat()}"


@dataclass
class Event:
    id: str
    elder_id: str
    device_id: str
    type: EventType
    severity: Severity
    timestamp: datetime
    value: Optional[float] = None
    accelerometer_x: Optional[float] = None
    accelerometer_y: Optional[float] = None
    accelerometer_z: Optional[float] = None
    metadata: dict = field(default_factory=dict)
    is_cancelled: bool = False


@dataclass
class Notification:
    id: str
    user_id: str
    event_id: Optional[str]
    type: NotificationType
    title: str
    message: str
    is_read: bool = False
    is_sent: bool = False
    sent_at: Optional[datetime] = None


NOTIFICATION_TYPE_FOR_EVENT = {
    EventType.FALL: NotificationType.FALL_DETECTED,
    EventType.HEART_RATE_LOW: NotificationType.HEART_RATE_ALERT,
    EventType.HEART_RATE_HIGH: NotificationType.HEART_RATE_ALERT,
    EventType.DEVICE_OFFLINE: NotificationType.DEVICE_OFFLINE,
}
