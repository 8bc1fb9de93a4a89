"""roster_sync.batch

Chunked, transactional application of export records to the roster.

Each chunk of settings.chunk_size records is one transaction:

  chunk N
    SAVEPOINT rec_0   map + upsert record 0   RELEASE | ROLLBACK TO
    SAVEPOINT rec_1   ...
    COMMIT

In dry-run mode the whole run shares the caller's open transaction: each
chunk runs under SAVEPOINT dry_run_chunk and is rolled back to it instead
of committing, and the caller rolls back at the end.

A record that cannot be mapped or written rolls back to its savepoint and
is rejected; its siblings carry on.  A chunk whose transaction fails is
rolled back whole and counted against the failure budget; the run stops
once more than settings.max_failed_chunks chunks have failed.

Chunk results are accumulated in a ChunkCounters and merged into the run's
SyncCounters only once the chunk has committed, so the run totals never
count rows that were rolled back.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Sequence

import psycopg

from roster_sync.config import SyncSettings
from roster_sync.record import map_record
from roster_sync.roster import upsert_event_member
from roster_sync.shared import (
    ChunkCounters,
    ChunkError,
    RecordError,
    RejectWriter,
    SyncCounters,
    reject_row,
)

log = logging.getLogger(__name__)

FAILURE_BUDGET_EXHAUSTED = "failure_budget_exhausted"
DRY_RUN_SAVEPOINT = "dry_run_chunk"


def iter_chunks(records: Sequence[Any], size: int) -> Iterator[tuple[int, Sequence[Any]]]:
    """Yield (start_index, chunk) pairs."""
    for start in range(0, len(records), size):
        yield start, records[start:start + size]


def process_chunk(
    conn: psycopg.Connection,
    chunk: Sequence[Any],
    start_index: int,
    event_id: int,
    data_source: str,
    batch_id: str,
    settings: SyncSettings,
    imported_at: datetime,
) -> ChunkCounters:
    """Apply one chunk inside the open transaction.  Does not commit.

    Record-level failures are rejected into the returned counters.  A
    failure that also breaks the savepoint rollback propagates, failing the
    chunk.
    """
    chunk_counters = ChunkCounters()
    for offset, data in enumerate(chunk):
        index = start_index + offset
        try:
            member = map_record(data, settings)
        except RecordError as exc:
            chunk_counters.records_rejected += 1
            chunk_counters.rejects.append(
                (reject_row(data, index, data_source), f"invalid_record: {exc}")
            )
            log.debug("Record %d rejected: %s", index, exc)
            continue

        sp = f"rec_{offset}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            upsert_event_member(
                conn, event_id, member, data_source, batch_id, imported_at, chunk_counters
            )
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except (psycopg.Error, RecordError, ValueError) as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            chunk_counters.records_rejected += 1
            chunk_counters.rejects.append(
                (reject_row(data, index, data_source), f"{_reject_reason(exc)}: {exc}")
            )
            chunk_counters.warnings.append(
                f"member {member.membership_number}: {type(exc).__name__}: {exc}"
            )
    return chunk_counters


def _reject_reason(exc: Exception) -> str:
    return "db_error" if isinstance(exc, psycopg.Error) else "invalid_record"


def _undo_dry_run_chunk(conn: psycopg.Connection) -> None:
    conn.execute(f"ROLLBACK TO SAVEPOINT {DRY_RUN_SAVEPOINT}")
    conn.execute(f"RELEASE SAVEPOINT {DRY_RUN_SAVEPOINT}")


def _commit_chunk(conn: psycopg.Connection, dry_run: bool) -> None:
    if dry_run:
        _undo_dry_run_chunk(conn)
    else:
        conn.commit()


def _recover_connection(
    conn: psycopg.Connection,
    reconnect: Callable[[], psycopg.Connection] | None,
    dry_run: bool = False,
) -> psycopg.Connection:
    """Roll back a failed chunk; replace the connection if it is unusable."""
    if not conn.closed and not conn.broken:
        try:
            if dry_run:
                try:
                    _undo_dry_run_chunk(conn)
                    return conn
                except psycopg.Error as exc:
                    log.warning("Dry-run savepoint rollback failed: %s", exc)
            conn.rollback()
            return conn
        except psycopg.Error as exc:
            log.warning("Rollback after chunk failure failed: %s", exc)

    if reconnect is None:
        return conn
    log.warning("Database connection lost; reconnecting before next chunk")
    conn.close()
    return reconnect()


def _log_progress(done: int, total: int, started: float) -> None:
    elapsed = time.monotonic() - started
    rate = done / elapsed if elapsed > 0 else 0.0
    eta = (total - done) / rate if rate > 0 else 0.0
    log.info(
        "Progress: %d/%d records (%.1f%%), %.0f records/s, ETA %.0fs",
        done, total, 100.0 * done / total if total else 100.0, rate, eta,
    )


def process_records(
    conn: psycopg.Connection,
    records: Sequence[Any],
    event_id: int,
    data_source: str,
    batch_id: str,
    settings: SyncSettings,
    counters: SyncCounters,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
    on_progress: Callable[[SyncCounters], None] | None = None,
    reconnect: Callable[[], psycopg.Connection] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> psycopg.Connection:
    """Apply records chunk by chunk, updating counters in place.

    Returns the connection in use at the end, which differs from `conn`
    when a broken connection was replaced through `reconnect`.
    """
    chunks = list(iter_chunks(records, settings.chunk_size))
    total = len(records)
    counters.records_total += total
    counters.chunks_total += len(chunks)
    imported_at = datetime.now(timezone.utc)
    started = time.monotonic()

    log.info(
        "Processing %d %s records in %d chunks of up to %d%s",
        total, data_source, len(chunks), settings.chunk_size,
        " [dry-run]" if dry_run else "",
    )

    for chunk_index, (start, chunk) in enumerate(chunks):
        is_last = chunk_index == len(chunks) - 1
        try:
            if dry_run:
                conn.execute(f"SAVEPOINT {DRY_RUN_SAVEPOINT}")
            chunk_counters = process_chunk(
                conn, chunk, start, event_id, data_source, batch_id, settings, imported_at
            )
            _commit_chunk(conn, dry_run)
        except Exception as exc:
            err = ChunkError(
                f"chunk {chunk_index + 1}/{len(chunks)} (records {start}-{start + len(chunk) - 1}) "
                f"rolled back: {type(exc).__name__}: {exc}",
                chunk_index=chunk_index,
                cause=exc,
            )
            log.error("%s", err)
            counters.chunks_failed += 1
            counters.records_rolled_back += len(chunk)
            counters.warnings.append(str(err))
            conn = _recover_connection(conn, reconnect, dry_run)
            if rejects is not None:
                for offset, data in enumerate(chunk):
                    rejects.write(
                        reject_row(data, start + offset, data_source), f"chunk_failed: {exc}"
                    )
            if counters.chunks_failed > settings.max_failed_chunks:
                counters.safe_stop_reason = FAILURE_BUDGET_EXHAUSTED
                log.error(
                    "Stopping: %d chunks failed (budget %d); %d records not attempted",
                    counters.chunks_failed, settings.max_failed_chunks,
                    total - (start + len(chunk)),
                )
                if on_progress is not None:
                    on_progress(counters)
                break
        else:
            counters.chunks_committed += 1
            counters.merge(chunk_counters)
            if rejects is not None:
                for row, reason in chunk_counters.rejects:
                    rejects.write(row, reason)

        done = start + len(chunk)
        if is_last or done // settings.progress_interval > start // settings.progress_interval:
            _log_progress(done, total, started)
        if on_progress is not None:
            on_progress(counters)
        if not is_last and settings.chunk_pause_seconds > 0:
            sleep(settings.chunk_pause_seconds)

    return conn
