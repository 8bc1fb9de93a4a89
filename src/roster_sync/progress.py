"""roster_sync.progress

Job-progress record (sync_progress) for one sync run.

Progress is written on its own autocommit connection so that it is visible
to whoever triggered the sync while chunk transactions are still open, and
survives a chunk rollback.
"""

from __future__ import annotations

import logging

import psycopg

from roster_sync.shared import SyncCounters

log = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(
        self,
        conn: psycopg.Connection,
        sync_id: str,
        sync_type: str,
        created_by: str = "system",
    ) -> None:
        self._conn = conn
        self.sync_id = sync_id
        self.sync_type = sync_type
        self.created_by = created_by

    def start(self) -> None:
        """Create the record, or reset an existing one for this sync_id, as IN_PROGRESS."""
        self._conn.execute(
            """
            INSERT INTO sync_progress (
                sync_id, sync_type, status, processed_records, error_count,
                start_time, message, created_by
            )
            VALUES (%s, %s, 'IN_PROGRESS', 0, 0, now(), %s, %s)
            ON CONFLICT (sync_id) DO UPDATE SET
                sync_type         = EXCLUDED.sync_type,
                status            = 'IN_PROGRESS',
                total_records     = NULL,
                processed_records = 0,
                error_count       = 0,
                start_time        = now(),
                end_time          = NULL,
                message           = EXCLUDED.message,
                created_by        = EXCLUDED.created_by
            """,
            (self.sync_id, self.sync_type, "Sync started", self.created_by),
        )

    def set_total(self, total_records: int, event_id: int | None = None) -> None:
        self._conn.execute(
            """
            UPDATE sync_progress
            SET total_records = %s, event_id = COALESCE(%s, event_id)
            WHERE sync_id = %s
            """,
            (total_records, event_id, self.sync_id),
        )

    def update(self, counters: SyncCounters) -> None:
        try:
            self._conn.execute(
                """
                UPDATE sync_progress
                SET processed_records = %s, error_count = %s
                WHERE sync_id = %s
                """,
                (counters.records_processed, counters.errors_total, self.sync_id),
            )
        except psycopg.Error as exc:
            # A lost progress update must not fail the roster write.
            log.warning("Progress update failed for sync %s: %s", self.sync_id, exc)

    def finish(self, status: str, message: str, counters: SyncCounters) -> None:
        self._conn.execute(
            """
            UPDATE sync_progress SET
                status            = %s,
                message           = %s,
                processed_records = %s,
                error_count       = %s,
                end_time          = now()
            WHERE sync_id = %s
            """,
            (status, message, counters.records_processed, counters.errors_total, self.sync_id),
        )
        log.info("Sync %s finished: %s (%s)", self.sync_id, status, message)
