"""Append-only event store.

Events are immutable once written. Inserts are keyed on ``dedup_key`` so a
handler that is re-run after a transient failure gets back the row it
already wrote instead of creating a second event.
"""

import json
import logging

from fallhelp.db.pool import persistence_errors
from fallhelp.shared.errors import PersistenceError
from fallhelp.shared.logging import log_event
from fallhelp.shared.metrics import events_created_total
from fallhelp.shared.models import Event, EventType, NewEvent, Severity

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "id, elder_id, device_id, type, severity, timestamp, value, "
    "accelerometer_x, accelerometer_y, accelerometer_z, metadata, is_cancelled"
)

INSERT_EVENT_SQL = f"""
INSERT INTO events (
  elder_id, device_id, type, severity, timestamp, value,
  accelerometer_x, accelerometer_y, accelerometer_z, metadata, dedup_key
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11)
ON CONFLICT (dedup_key) DO NOTHING
RETURNING {_EVENT_COLUMNS}
"""

SELECT_BY_DEDUP_SQL = f"SELECT {_EVENT_COLUMNS} FROM events WHERE dedup_key = $1"


def _load_metadata(raw) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def event_from_row(row) -> Event:
    return Event(
        id=row["id"],
        elder_id=row["elder_id"],
        device_id=row["device_id"],
        type=EventType(row["type"]),
        severity=Severity(row["severity"]),
        timestamp=row["timestamp"],
        value=row["value"],
        accelerometer_x=row["accelerometer_x"],
        accelerometer_y=row["accelerometer_y"],
        accelerometer_z=row["accelerometer_z"],
        metadata=_load_metadata(row["metadata"]),
        is_cancelled=bool(row["is_cancelled"]),
    )


class EventStore:
    def __init__(self, pool):
        self.pool = pool

    async def create_event(self, new_event: NewEvent) -> Event:
        """Persist an event, returning the stored row.

        Raises PersistenceError (retryable) on driver or network failure.
        """
        dedup_key = new_event.dedup_key
        with persistence_errors("create_event"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    INSERT_EVENT_SQL,
                    new_event.elder_id,
                    new_event.device_id,
                    new_event.type.value,
                    new_event.severity.value,
                    new_event.timestamp,
                    new_event.value,
                    new_event.accelerometer_x,
                    new_event.accelerometer_y,
                    new_event.accelerometer_z,
                    json.dumps(new_event.metadata, default=str),
                    dedup_key,
                )
                if row is None:
                    row = await conn.fetchrow(SELECT_BY_DEDUP_SQL, dedup_key)
                    log_event(
                        logger,
                        "event already stored",
                        event_type=new_event.type.value,
                        dedup_key=dedup_key,
                    )
                else:
                    events_created_total.labels(event_type=new_event.type.value).inc()
        if row is None:
            # conflict row vanished between the insert and the select
            raise PersistenceError(
                f"event {dedup_key} conflicted but could not be read back",
                operation="create_event",
            )
        return event_from_row(row)
