"""roster_sync.target

Resolve the Event that synced roster rows attach to, and maintain the
Event's sync bookkeeping (sync_status, last_sync_time, member_sync_count).

Resolution order:
  1. An explicit event id chosen by the operator; it must exist.
  2. The lowest-id active Event of the configured type.
  3. A default Event, created on first use.  Creation is keyed on the unique
     event_code so concurrent runs converge on one row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import psycopg

from roster_sync.config import SyncSettings
from roster_sync.shared import TargetError

log = logging.getLogger(__name__)

DEFAULT_EVENT_VENUE = "TBA"
DEFAULT_EVENT_DATASET_ID = "auto-created"
DEFAULT_EVENT_LEAD_DAYS = 30

_EVENT_COLUMNS = "id, event_code, name, event_type, is_active"


@dataclass
class TargetEvent:
    id: int
    event_code: str
    name: str
    event_type: str
    is_active: bool
    created: bool = False


def _to_event(row: tuple, created: bool = False) -> TargetEvent:
    return TargetEvent(
        id=int(row[0]),
        event_code=row[1],
        name=row[2],
        event_type=row[3],
        is_active=bool(row[4]),
        created=created,
    )


def load_event(conn: psycopg.Connection, event_id: int) -> TargetEvent | None:
    row = conn.execute(
        f"SELECT {_EVENT_COLUMNS} FROM event WHERE id = %s",
        (event_id,),
    ).fetchone()
    return _to_event(row) if row else None


def find_active_event(conn: psycopg.Connection, event_type: str) -> TargetEvent | None:
    row = conn.execute(
        f"""
        SELECT {_EVENT_COLUMNS} FROM event
        WHERE event_type = %s AND is_active
        ORDER BY id
        LIMIT 1
        """,
        (event_type,),
    ).fetchone()
    return _to_event(row) if row else None


def create_default_event(conn: psycopg.Connection, settings: SyncSettings) -> TargetEvent:
    """Insert the default Event if its code is free, then select it by code."""
    event_date = datetime.now(timezone.utc) + timedelta(days=DEFAULT_EVENT_LEAD_DAYS)
    inserted = conn.execute(
        """
        INSERT INTO event (
            event_code, name, event_type, dataset_id, description,
            event_date, venue, is_active, is_voting_enabled,
            registration_open, qr_scan_enabled, sync_status
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE, TRUE, TRUE, TRUE, 'PENDING')
        ON CONFLICT (event_code) DO NOTHING
        RETURNING id
        """,
        (
            settings.default_event_code,
            settings.default_event_name,
            settings.target_event_type,
            DEFAULT_EVENT_DATASET_ID,
            "Automatically created for member sync",
            event_date,
            DEFAULT_EVENT_VENUE,
        ),
    ).fetchone()

    row = conn.execute(
        f"SELECT {_EVENT_COLUMNS} FROM event WHERE event_code = %s",
        (settings.default_event_code,),
    ).fetchone()
    if row is None:
        raise TargetError(f"default event {settings.default_event_code!r} not found after insert")

    event = _to_event(row, created=inserted is not None)
    if event.created:
        log.info("Created default %s event id=%s code=%s",
                 event.event_type, event.id, event.event_code)
    elif event.event_type != settings.target_event_type or not event.is_active:
        log.warning(
            "Default event code %s already used by id=%s (type=%s active=%s); syncing into it",
            event.event_code, event.id, event.event_type, event.is_active,
        )
    return event


def resolve_target_event(
    conn: psycopg.Connection,
    settings: SyncSettings,
    event_id: int | None = None,
) -> TargetEvent:
    """Return the Event to sync into.  Caller commits."""
    try:
        if event_id is not None:
            event = load_event(conn, event_id)
            if event is None:
                raise TargetError(f"event id={event_id} does not exist")
            if not event.is_active:
                log.warning("Target event id=%s is inactive", event_id)
            return event

        event = find_active_event(conn, settings.target_event_type)
        if event is not None:
            log.info("Using active %s event id=%s (%s)",
                     event.event_type, event.id, event.name)
            return event

        log.info("No active %s event found; creating default", settings.target_event_type)
        return create_default_event(conn, settings)
    except psycopg.Error as exc:
        raise TargetError(f"could not resolve target event: {exc}") from exc


# ---------------------------------------------------------------------------
# Event sync bookkeeping
# ---------------------------------------------------------------------------

def mark_event_sync_started(conn: psycopg.Connection, event_id: int) -> None:
    conn.execute(
        """
        UPDATE event SET sync_status = 'IN_PROGRESS', updated_at = now()
        WHERE id = %s
        """,
        (event_id,),
    )


def mark_event_sync_finished(conn: psycopg.Connection, event_id: int, status: str) -> None:
    """Close the Event's sync status and refresh its roster count."""
    conn.execute(
        """
        UPDATE event SET
            sync_status       = %s,
            last_sync_time    = now(),
            member_sync_count = (
                SELECT count(*) FROM event_member WHERE event_id = %s
            ),
            updated_at        = now()
        WHERE id = %s
        """,
        (status, event_id, event_id),
    )
