"""Alert fan-out: live publish and durable caregiver notification.

Both branches are started together and neither can cancel the other. The
durable branch resolves caregivers once, writes one inbox row per caregiver,
then sends a single push batch to the caregivers that registered a token.
Rows are written regardless of push outcome; ``is_sent`` only follows an
``ok`` ticket from the push gateway.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Optional

from fallhelp.dispatcher.push_sender import PushMessage, PushResult
from fallhelp.dispatcher.templates import push_data, render_notification
from fallhelp.shared.config import optional_env
from fallhelp.shared.errors import PersistenceError
from fallhelp.shared.logging import log_event, log_exception
from fallhelp.shared.metrics import fanout_failures_total, push_deliveries_total
from fallhelp.shared.models import (
    NOTIFICATION_TYPE_FOR_EVENT,
    Caregiver,
    Event,
    Notification,
)
from fallhelp.shared.utils import utcnow

logger = logging.getLogger(__name__)

PUSH_TIMEOUT_SECONDS = float(optional_env("PUSH_TIMEOUT_SECONDS", "10"))
NOTIFY_STORE_RETRIES = int(optional_env("INGEST_PERSIST_RETRIES", "3"))
NOTIFY_RETRY_BACKOFF_SECONDS = float(optional_env("INGEST_RETRY_BACKOFF_SECONDS", "0.5"))


@dataclass
class AlertContext:
    """What the handler already knows about the alert: the live message to send."""

    live_event: str
    live_data: dict
    elder_name: str


@dataclass
class NotifyOutcome:
    notifications_created: int = 0
    push_attempted: int = 0
    push_succeeded: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class DispatchResult:
    event_id: str
    live_ok: bool
    notifications_created: int = 0
    push_attempted: int = 0
    push_succeeded: int = 0
    errors: list[str] = field(default_factory=list)


class AlertDispatcher:
    def __init__(
        self,
        publisher,
        directory,
        notifications,
        push_client,
        push_timeout: float = PUSH_TIMEOUT_SECONDS,
        store_retries: int = NOTIFY_STORE_RETRIES,
        retry_backoff: float = NOTIFY_RETRY_BACKOFF_SECONDS,
    ):
        self.publisher = publisher
        self.directory = directory
        self.notifications = notifications
        self.push_client = push_client
        self.push_timeout = push_timeout
        self.store_retries = max(0, store_retries)
        self.retry_backoff = retry_backoff

    async def _with_store_retry(self, operation: str, call, **context):
        """Run ``call()``, retrying a retryable PersistenceError with a fixed backoff.

        Notification inserts are idempotent per (user, event), so a re-run
        after an ambiguous failure never duplicates an inbox row.
        """
        attempt = 0
        while True:
            try:
                return await call()
            except PersistenceError as exc:
                if not exc.retryable or attempt >= self.store_retries:
                    raise
                attempt += 1
                log_event(
                    logger,
                    "notification store failure, retrying",
                    level="WARNING",
                    operation=operation,
                    attempt=attempt,
                    error=str(exc),
                    **context,
                )
                await asyncio.sleep(self.retry_backoff)

    async def dispatch(self, event: Event, context: AlertContext, notify: bool = True) -> DispatchResult:
        """Fan an event out. Never raises for a branch failure; see ``errors``."""
        branches = [self._publish_live(event, context)]
        if notify:
            branches.append(self._notify_caregivers(event, context))
        outcomes = await asyncio.gather(*branches, return_exceptions=True)

        result = DispatchResult(event_id=event.id, live_ok=False)
        live_outcome = outcomes[0]
        if isinstance(live_outcome, BaseException):
            fanout_failures_total.labels(branch="live").inc()
            log_exception(logger, "live publish failed", live_outcome, {"event_id": event.id})
            result.errors.append(f"live: {live_outcome}")
        else:
            result.live_ok = True

        if notify:
            notify_outcome = outcomes[1]
            if isinstance(notify_outcome, BaseException):
                fanout_failures_total.labels(branch="notify").inc()
                log_exception(
                    logger,
                    "caregiver notification failed",
                    notify_outcome,
                    {"event_id": event.id, "event_type": event.type.value},
                )
                result.errors.append(f"notify: {notify_outcome}")
            else:
                result.notifications_created = notify_outcome.notifications_created
                result.push_attempted = notify_outcome.push_attempted
                result.push_succeeded = notify_outcome.push_succeeded
                result.errors.extend(notify_outcome.errors)

        log_event(
            logger,
            "alert dispatched",
            event_id=event.id,
            event_type=event.type.value,
            live_ok=result.live_ok,
            notifications_created=result.notifications_created,
            push_attempted=result.push_attempted,
            push_succeeded=result.push_succeeded,
            error_count=len(result.errors),
        )
        return result

    async def _publish_live(self, event: Event, context: AlertContext) -> int:
        return await self.publisher.publish(context.live_event, event.elder_id, context.live_data)

    async def _notify_caregivers(self, event: Event, context: AlertContext) -> NotifyOutcome:
        outcome = NotifyOutcome()
        notification_type = NOTIFICATION_TYPE_FOR_EVENT.get(event.type)
        if notification_type is None:
            return outcome

        # recipients are fixed here; caregivers added later never see this event
        elder = await self._with_store_retry(
            "get_elder_with_caregivers",
            lambda: self.directory.get_elder_with_caregivers(event.elder_id),
            event_id=event.id,
        )
        if elder is None:
            log_event(logger, "elder not found for notification", level="WARNING", elder_id=event.elder_id)
            return outcome
        caregivers = elder.caregivers
        if not caregivers:
            return outcome

        elder_name = elder.elder.full_name or context.elder_name
        title, message = render_notification(event, elder_name)

        created = await asyncio.gather(
            *(
                self._with_store_retry(
                    "create_notification",
                    partial(
                        self.notifications.create_notification,
                        c.user_id,
                        event.id,
                        notification_type,
                        title,
                        message,
                    ),
                    event_id=event.id,
                    user_id=c.user_id,
                )
                for c in caregivers
            ),
            return_exceptions=True,
        )
        rows: dict[str, Optional[Notification]] = {}
        for caregiver, row in zip(caregivers, created):
            if isinstance(row, BaseException):
                log_exception(
                    logger,
                    "notification insert failed",
                    row,
                    {"event_id": event.id, "user_id": caregiver.user_id},
                )
                outcome.errors.append(f"notification {caregiver.user_id}: {row}")
                rows[caregiver.user_id] = None
            else:
                rows[caregiver.user_id] = row
                outcome.notifications_created += 1

        # every tokened caregiver is pushed, including those whose row insert failed
        recipients: list[Caregiver] = [c for c in caregivers if c.push_token]
        if not recipients:
            return outcome
        messages = []
        for c in recipients:
            row = rows.get(c.user_id)
            messages.append(
                PushMessage(
                    token=c.push_token,
                    title=title,
                    body=message,
                    data=push_data(event, notification_type, row.id if row else None),
                )
            )
        outcome.push_attempted = len(messages)

        try:
            results: list[PushResult] = await asyncio.wait_for(
                self.push_client.send_batch(messages), timeout=self.push_timeout
            )
        except asyncio.TimeoutError:
            push_deliveries_total.labels(result="timeout").inc(len(messages))
            log_event(
                logger,
                "push batch timed out",
                level="WARNING",
                event_id=event.id,
                timeout_seconds=self.push_timeout,
                recipients=len(messages),
            )
            outcome.errors.append(f"push: timed out after {self.push_timeout}s")
            return outcome
        except Exception as exc:
            log_exception(logger, "push batch failed", exc, {"event_id": event.id})
            outcome.errors.append(f"push: {exc}")
            return outcome

        sent_ids = []
        for caregiver, push_result in zip(recipients, results):
            if push_result.success:
                outcome.push_succeeded += 1
                row = rows.get(caregiver.user_id)
                if row is not None:
                    sent_ids.append(row.id)
            else:
                log_event(
                    logger,
                    "push delivery failed",
                    level="WARNING",
                    event_id=event.id,
                    user_id=caregiver.user_id,
                    error=push_result.error,
                )
        if sent_ids:
            try:
                await self.notifications.mark_sent(sent_ids, utcnow())
            except Exception as exc:
                log_exception(logger, "mark_sent failed", exc, {"event_id": event.id})
                outcome.errors.append(f"mark_sent: {exc}")
        return outcome
