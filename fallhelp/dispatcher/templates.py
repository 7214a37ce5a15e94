from typing import Optional

from fallhelp.shared.models import Event, EventType, NotificationType

FALL_TITLE = "Fall detected"
FALL_MESSAGE = "{elder_name} may have fallen. Please check on them immediately!"
HR_HIGH_TITLE = "Abnormally high heart rate"
HR_LOW_TITLE = "Abnormally low heart rate"
HR_MESSAGE = "{elder_name} has a heart rate of {value:g} BPM"
OFFLINE_TITLE = "Device disconnected"
OFFLINE_MESSAGE = (
    "{elder_name}'s device is offline. Possible causes: Wi-Fi dropped, "
    "battery ran out or the device was switched off."
)


def render_notification(event: Event, elder_name: str) -> tuple[str, str]:
    """Return (title, message) for a caregiver notification about ``event``."""
    if event.type == EventType.FALL:
        return FALL_TITLE, FALL_MESSAGE.format(elder_name=elder_name)
    if event.type in (EventType.HEART_RATE_HIGH, EventType.HEART_RATE_LOW):
        title = HR_HIGH_TITLE if event.type == EventType.HEART_RATE_HIGH else HR_LOW_TITLE
        return title, HR_MESSAGE.format(elder_name=elder_name, value=event.value or 0)
    if event.type == EventType.DEVICE_OFFLINE:
        return OFFLINE_TITLE, OFFLINE_MESSAGE.format(elder_name=elder_name)
    raise ValueError(f"no notification template for event type {event.type.value}")


def push_data(event: Event, notification_type: NotificationType, notification_id: Optional[str]) -> dict:
    """Data block delivered with the push so the app can deep-link to the event."""
    return {
        "type": notification_type.value,
        "notificationId": notification_id,
        "eventId": event.id,
        "elderId": event.elder_id,
        "timestamp": event.timestamp.isoformat(),
    }
