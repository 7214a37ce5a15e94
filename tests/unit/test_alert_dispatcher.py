import asyncio
from unittest.mock import AsyncMock

import pytest

from fallhelp.dispatcher.dispatcher import AlertContext, AlertDispatcher
from fallhelp.dispatcher.push_sender import PushResult
from fallhelp.live.publisher import FALL_DETECTED
from fallhelp.shared.errors import PersistenceError
from fallhelp.shared.models import EventType, NotificationType, Severity
from tests.factories import caregiver, make_elder_with_caregivers, make_event, make_notification

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


class FakeNotifications:
    def __init__(self, fail_for=(), flaky=None):
        self.created = []
        self.sent = []
        self.fail_for = set(fail_for)
        self.flaky = dict(flaky or {})
        self.attempts = []

    async def create_notification(self, user_id, event_id, notification_type, title, message):
        self.attempts.append(user_id)
        if user_id in self.fail_for:
            raise PersistenceError(f"insert failed for {user_id}")
        if self.flaky.get(user_id, 0) > 0:
            self.flaky[user_id] -= 1
            raise PersistenceError("connection reset")
        row = make_notification(
            id=f"notif-{user_id}",
            user_id=user_id,
            event_id=event_id,
            type=notification_type,
            title=title,
            message=message,
        )
        self.created.append(row)
        return row

    async def mark_sent(self, ids, sent_at):
        self.sent.extend(ids)
        return len(ids)


class FakePushClient:
    def __init__(self, ok=True, delay=0.0):
        self.batches = []
        self.ok = ok
        self.delay = delay

    async def send_batch(self, messages):
        self.batches.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        return [PushResult(token=m.token, success=self.ok, error=None if self.ok else "DeviceNotRegistered")
                for m in messages]


def _context():
    return AlertContext(
        live_event=FALL_DETECTED,
        live_data={"eventId": "evt-1", "elderId": "elder-1"},
        elder_name="Somchai Jaidee",
    )


def _dispatcher(caregivers, notifications=None, push=None, publisher=None, push_timeout=1.0):
    directory = AsyncMock()
    directory.get_elder_with_caregivers.return_value = make_elder_with_caregivers(*caregivers)
    publisher = publisher or AsyncMock()
    notifications = notifications or FakeNotifications()
    push = push or FakePushClient()
    dispatcher = AlertDispatcher(
        publisher=publisher,
        directory=directory,
        notifications=notifications,
        push_client=push,
        push_timeout=push_timeout,
        retry_backoff=0,
    )
    return dispatcher, directory, publisher, notifications, push


async def test_two_caregivers_one_token_gives_two_rows_one_push():
    dispatcher, _, publisher, notifications, push = _dispatcher(
        [caregiver("user-a", "ExponentPushToken[aaaa]"), caregiver("user-b")]
    )

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.live_ok is True
    assert result.notifications_created == 2
    assert {n.user_id for n in notifications.created} == {"user-a", "user-b"}
    assert all(n.type == NotificationType.FALL_DETECTED for n in notifications.created)
    assert len(push.batches) == 1
    assert [m.token for m in push.batches[0]] == ["ExponentPushToken[aaaa]"]
    assert result.push_attempted == 1
    assert result.push_succeeded == 1
    assert notifications.sent == ["notif-user-a"]
    publisher.publish.assert_awaited_once_with(FALL_DETECTED, "elder-1", _context().live_data)


async def test_notification_text_uses_elder_name():
    dispatcher, _, _, notifications, push = _dispatcher([caregiver("user-a", "ExponentPushToken[aaaa]")])

    await dispatcher.dispatch(make_event(), _context())

    row = notifications.created[0]
    assert row.title == "Fall detected"
    assert "Somchai Jaidee" in row.message
    message = push.batches[0][0]
    assert message.data["notificationId"] == "notif-user-a"
    assert message.data["eventId"] == "evt-1"
    assert message.data["type"] == "FALL_DETECTED"


async def test_notify_false_only_publishes_live():
    dispatcher, directory, publisher, notifications, push = _dispatcher([caregiver("user-a", "ExponentPushToken[a]")])
    event = make_event(type=EventType.DEVICE_ONLINE, severity=Severity.NORMAL)

    result = await dispatcher.dispatch(event, _context(), notify=False)

    assert result.live_ok is True
    assert result.notifications_created == 0
    directory.get_elder_with_caregivers.assert_not_called()
    assert notifications.created == []
    assert push.batches == []


async def test_live_failure_does_not_block_notifications():
    publisher = AsyncMock()
    publisher.publish.side_effect = RuntimeError("socket layer down")
    dispatcher, _, _, notifications, push = _dispatcher(
        [caregiver("user-a", "ExponentPushToken[aaaa]")], publisher=publisher
    )

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.live_ok is False
    assert result.notifications_created == 1
    assert len(push.batches) == 1
    assert any(e.startswith("live:") for e in result.errors)


async def test_notify_failure_does_not_block_live():
    dispatcher, directory, publisher, _, _ = _dispatcher([caregiver("user-a")])
    directory.get_elder_with_caregivers.side_effect = PersistenceError("db down")

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.live_ok is True
    publisher.publish.assert_awaited_once()
    assert any(e.startswith("notify:") for e in result.errors)


async def test_failed_row_still_pushes_but_is_not_marked_sent():
    notifications = FakeNotifications(fail_for={"user-a"})
    dispatcher, _, _, _, push = _dispatcher(
        [caregiver("user-a", "ExponentPushToken[aaaa]"), caregiver("user-b", "ExponentPushToken[bbbb]")],
        notifications=notifications,
    )

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.notifications_created == 1
    assert len(push.batches[0]) == 2
    assert push.batches[0][0].data["notificationId"] is None
    assert notifications.sent == ["notif-user-b"]


async def test_push_timeout_still_leaves_rows():
    push = FakePushClient(delay=5.0)
    dispatcher, _, _, notifications, _ = _dispatcher(
        [caregiver("user-a", "ExponentPushToken[aaaa]"), caregiver("user-b")],
        push=push,
        push_timeout=0.05,
    )

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.notifications_created == 2
    assert result.push_succeeded == 0
    assert notifications.sent == []
    assert any("timed out" in e for e in result.errors)


async def test_failed_push_is_not_marked_sent():
    dispatcher, _, _, notifications, _ = _dispatcher(
        [caregiver("user-a", "ExponentPushToken[aaaa]")], push=FakePushClient(ok=False)
    )

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.push_attempted == 1
    assert result.push_succeeded == 0
    assert notifications.sent == []


async def test_no_caregivers_creates_nothing():
    dispatcher, _, _, notifications, push = _dispatcher([])

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.notifications_created == 0
    assert push.batches == []


async def test_heart_rate_notification_text():
    dispatcher, _, _, notifications, _ = _dispatcher([caregiver("user-a")])
    event = make_event(type=EventType.HEART_RATE_HIGH, value=142.0, metadata={"direction": "HIGH"})

    await dispatcher.dispatch(event, _context())

    row = notifications.created[0]
    assert row.type == NotificationType.HEART_RATE_ALERT
    assert row.title == "Abnormally high heart rate"
    assert "142 BPM" in row.message


async def test_caregiver_lookup_is_retried_after_transient_store_error():
    dispatcher, directory, _, notifications, push = _dispatcher([caregiver("user-a", "ExponentPushToken[aaaa]")])
    elder = directory.get_elder_with_caregivers.return_value
    directory.get_elder_with_caregivers.side_effect = [PersistenceError("connection reset"), elder]

    result = await dispatcher.dispatch(make_event(), _context())

    assert directory.get_elder_with_caregivers.await_count == 2
    assert result.notifications_created == 1
    assert len(push.batches) == 1
    assert not any(e.startswith("notify:") for e in result.errors)


async def test_notification_insert_is_retried_after_transient_store_error():
    notifications = FakeNotifications(flaky={"user-a": 2})
    dispatcher, _, _, _, _ = _dispatcher([caregiver("user-a"), caregiver("user-b")], notifications=notifications)

    result = await dispatcher.dispatch(make_event(), _context())

    assert result.notifications_created == 2
    assert notifications.attempts.count("user-a") == 3
    assert notifications.attempts.count("user-b") == 1


async def test_non_retryable_lookup_error_is_not_retried():
    dispatcher, directory, _, notifications, _ = _dispatcher([caregiver("user-a")])
    directory.get_elder_with_caregivers.side_effect = PersistenceError("bad query", retryable=False)

    result = await dispatcher.dispatch(make_event(), _context())

    assert directory.get_elder_with_caregivers.await_count == 1
    assert notifications.created == []
    assert any(e.startswith("notify:") for e in result.errors)
