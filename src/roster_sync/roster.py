"""roster_sync.roster

Upsert of export records into event_member, keyed on
(event_id, membership_number).

token and verification_code are generated once, at insert.  They are
already embedded in registration links and SMS messages sent to members, so
updates never touch them, and never touch the workflow columns owned by
registration, BMM and ticketing either.  Updates only refresh the name,
contact, descriptive and provenance columns.
"""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from datetime import datetime
from typing import Any, Literal

import psycopg
from psycopg import sql

from roster_sync.record import DESCRIPTIVE_COLUMNS, MemberRecord
from roster_sync.shared import ChunkCounters, RecordError

log = logging.getLogger(__name__)

UpsertOutcome = Literal["inserted", "updated"]

VERIFICATION_CODE_LENGTH = 6

INITIAL_WORKFLOW_STATE: dict[str, Any] = {
    "registration_status": "PENDING",
    "registration_step": "INITIAL",
    "bmm_stage": "INVITED",
    "bmm_registration_stage": "PENDING",
    "ticket_status": "PENDING",
    "has_registered": False,
    "is_attending": False,
    "is_special_vote": False,
    "has_voted": False,
    "checked_in": False,
}

CONTACT_COLUMNS = (
    "name",
    "primary_email",
    "telephone_mobile",
    "has_valid_email",
    "has_valid_mobile",
)
PROVENANCE_COLUMNS = ("data_source", "import_batch_id", "imported_at")

INSERT_COLUMNS: tuple[str, ...] = (
    "event_id",
    "membership_number",
    *CONTACT_COLUMNS,
    "token",
    "verification_code",
    *INITIAL_WORKFLOW_STATE.keys(),
    *DESCRIPTIVE_COLUMNS,
    *PROVENANCE_COLUMNS,
)

UPDATE_COLUMNS: tuple[str, ...] = (
    *CONTACT_COLUMNS,
    *DESCRIPTIVE_COLUMNS,
    *PROVENANCE_COLUMNS,
)


def _column_list(columns: tuple[str, ...]) -> sql.Composed:
    return sql.SQL(", ").join(sql.Identifier(c) for c in columns)


_INSERT_SQL = sql.SQL(
    """
    INSERT INTO event_member ({columns})
    VALUES ({values})
    ON CONFLICT (event_id, membership_number) DO NOTHING
    RETURNING id
    """
).format(
    columns=_column_list(INSERT_COLUMNS),
    values=sql.SQL(", ").join([sql.Placeholder()] * len(INSERT_COLUMNS)),
)

_UPDATE_SQL = sql.SQL(
    """
    UPDATE event_member SET {assignments}, updated_at = now()
    WHERE id = %s
    """
).format(
    assignments=sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder())
        for c in UPDATE_COLUMNS
    ),
)


# ---------------------------------------------------------------------------
# Identity generation
# ---------------------------------------------------------------------------

def generate_token() -> uuid.UUID:
    return uuid.uuid4()


def generate_verification_code() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(VERIFICATION_CODE_LENGTH))


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _contact_values(member: MemberRecord) -> list[Any]:
    return [
        member.name,
        member.primary_email,
        member.telephone_mobile,
        member.has_valid_email,
        member.has_valid_mobile,
    ]


def _descriptive_values(member: MemberRecord) -> list[Any]:
    return [member.fields.get(c) for c in DESCRIPTIVE_COLUMNS]


def find_event_member_id(
    conn: psycopg.Connection,
    event_id: int,
    membership_number: str,
) -> int | None:
    row = conn.execute(
        """
        SELECT id FROM event_member
        WHERE event_id = %s AND membership_number = %s
        """,
        (event_id, membership_number),
    ).fetchone()
    return int(row[0]) if row else None


def insert_event_member(
    conn: psycopg.Connection,
    event_id: int,
    member: MemberRecord,
    data_source: str,
    batch_id: str,
    imported_at: datetime,
) -> int | None:
    """Insert a new roster row with a fresh identity.

    Returns the new id, or None if a row for (event_id, membership_number)
    already exists, e.g. written by a concurrent run since the lookup.
    """
    params = [
        event_id,
        member.membership_number,
        *_contact_values(member),
        generate_token(),
        generate_verification_code(),
        *INITIAL_WORKFLOW_STATE.values(),
        *_descriptive_values(member),
        data_source,
        batch_id,
        imported_at,
    ]
    row = conn.execute(_INSERT_SQL, params).fetchone()
    return int(row[0]) if row else None


def update_event_member(
    conn: psycopg.Connection,
    event_member_id: int,
    member: MemberRecord,
    data_source: str,
    batch_id: str,
    imported_at: datetime,
) -> None:
    """Refresh contact, descriptive and provenance columns only."""
    params = [
        *_contact_values(member),
        *_descriptive_values(member),
        data_source,
        batch_id,
        imported_at,
        event_member_id,
    ]
    conn.execute(_UPDATE_SQL, params)


def upsert_event_member(
    conn: psycopg.Connection,
    event_id: int,
    member: MemberRecord,
    data_source: str,
    batch_id: str,
    imported_at: datetime,
    counters: ChunkCounters,
) -> UpsertOutcome:
    """Insert-if-absent, update-if-present on (event_id, membership_number).

    The unique constraint is the final arbiter: if the insert finds the key
    taken by another writer, the record is applied as an update instead.
    Caller manages the transaction.
    """
    existing_id = find_event_member_id(conn, event_id, member.membership_number)
    if existing_id is None:
        new_id = insert_event_member(
            conn, event_id, member, data_source, batch_id, imported_at
        )
        if new_id is not None:
            counters.records_inserted += 1
            return "inserted"

        counters.concurrent_conflicts += 1
        log.info(
            "event_member (%s, %s) created concurrently; applying as update",
            event_id, member.membership_number,
        )
        existing_id = find_event_member_id(conn, event_id, member.membership_number)
        if existing_id is None:
            raise RecordError(
                f"conflicting event_member ({event_id}, {member.membership_number}) not visible"
            )

    update_event_member(conn, existing_id, member, data_source, batch_id, imported_at)
    counters.records_updated += 1
    return "updated"
