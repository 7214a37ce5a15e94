"""Pure decision functions for telemetry samples.

Nothing in here touches the database, the clock or the network. Handlers
resolve state first, then ask these functions whether a sample is alertable.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from fallhelp.shared.config import optional_env
from fallhelp.shared.models import EventType, Severity
from fallhelp.shared.utils import format_timestamp

DEVICE_ONLINE_WINDOW_SECONDS = int(optional_env("DEVICE_ONLINE_WINDOW_SECONDS", "300"))


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one sample.

    ``notify`` is False for decisions that only go to the live channel.
    """

    alertable: bool
    event_type: Optional[EventType] = None
    severity: Optional[Severity] = None
    notify: bool = False
    metadata: dict = field(default_factory=dict)


NOT_ALERTABLE = Decision(alertable=False)


def evaluate_fall(magnitude: Optional[float]) -> Decision:
    # the device has already decided this was a fall
    return Decision(
        alertable=True,
        event_type=EventType.FALL,
        severity=Severity.CRITICAL,
        notify=True,
        metadata={"magnitude": magnitude},
    )


def evaluate_heart_rate(bpm: float, low: float, high: float) -> Decision:
    """Compare a BPM sample against the device thresholds.

    Both bounds are exclusive: ``bpm == low`` and ``bpm == high`` are in band.
    """
    if bpm < low:
        return Decision(
            alertable=True,
            event_type=EventType.HEART_RATE_LOW,
            severity=Severity.CRITICAL,
            notify=True,
            metadata={"threshold": low, "direction": "LOW"},
        )
    if bpm > high:
        return Decision(
            alertable=True,
            event_type=EventType.HEART_RATE_HIGH,
            severity=Severity.CRITICAL,
            notify=True,
            metadata={"threshold": high, "direction": "HIGH"},
        )
    return NOT_ALERTABLE


def was_online(
    last_online: Optional[datetime],
    now: datetime,
    window_seconds: int = DEVICE_ONLINE_WINDOW_SECONDS,
) -> bool:
    """True when the stored heartbeat is inside the online window."""
    if last_online is None:
        return False
    return (now - last_online) < timedelta(seconds=window_seconds)


def evaluate_status(
    previously_online: bool,
    online: bool,
    last_online: Optional[datetime] = None,
) -> Decision:
    """Four-way transition over (previously_online, online).

    Going offline is a WARNING with durable notification. Coming back online
    is recorded but only reaches the live channel.
    """
    if previously_online and not online:
        return Decision(
            alertable=True,
            event_type=EventType.DEVICE_OFFLINE,
            severity=Severity.WARNING,
            notify=True,
            metadata={"previousOnlineAt": format_timestamp(last_online)},
        )
    if not previously_online and online:
        return Decision(
            alertable=True,
            event_type=EventType.DEVICE_ONLINE,
            severity=Severity.NORMAL,
            notify=False,
        )
    return NOT_ALERTABLE
