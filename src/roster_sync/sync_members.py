"""roster_sync.sync_members

Member export → event roster sync.

Run stages, each of which must succeed before the next begins:

  FETCH      GET the export for every requested source (retried)
  CLEAN      corruption guard; a badly corrupted export fails the run
  NORMALIZE  locate the record array in the JSON envelope
  TARGET     resolve or create the Event the roster belongs to
  BATCH      chunked transactional upsert into event_member
  REPORT     close the sync_progress record and the Event's sync status

Nothing is written to the roster until every source has been fetched,
cleaned and normalized.  Terminal status:

  SUCCESS  no chunk failed (record-level rejects are reported, not fatal)
  PARTIAL  some chunks failed or the failure budget stopped the run,
           but at least one chunk committed
  FAILED   an error before persistence, or every attempted chunk failed

Usage:
    INFORMER_EMAIL_URL='https://...' roster-sync --db-dsn postgresql://... \\
        --sync-type EMAIL_MEMBERS --dry-run
"""

from __future__ import annotations

import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import click
import psycopg
import requests

from roster_sync.batch import process_records
from roster_sync.config import SyncSettings, load_settings
from roster_sync.corruption import clean_response
from roster_sync.envelope import extract_records
from roster_sync.fetch import fetch_export, redact_url
from roster_sync.progress import ProgressTracker
from roster_sync.shared import (
    CorruptionError,
    EnvelopeError,
    FetchError,
    RejectWriter,
    SyncCounters,
    SyncError,
    TargetError,
    write_run_report,
)
from roster_sync.target import (
    TargetEvent,
    mark_event_sync_finished,
    mark_event_sync_started,
    resolve_target_event,
)

log = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_PARTIAL = "PARTIAL"
STATUS_FAILED = "FAILED"

SYNC_TYPE_ALL = "ALL"

# sync type → data_source recorded on every row it writes
SOURCES = {
    "EMAIL_MEMBERS": "INFORMER_EMAIL_DIRECT",
    "SMS_MEMBERS": "INFORMER_SMS_DIRECT",
}


@dataclass
class SyncSource:
    sync_type: str
    url: str
    data_source: str


@dataclass
class SyncResult:
    sync_id: str
    sync_type: str
    status: str
    message: str
    batch_id: str
    counters: SyncCounters = field(default_factory=SyncCounters)
    event_id: int | None = None
    event_created: bool = False
    failed_stage: str | None = None


def build_sources(
    sync_type: str,
    email_url: str | None,
    sms_url: str | None,
) -> list[SyncSource]:
    """Sources for a sync type; ALL covers both exports."""
    urls = {"EMAIL_MEMBERS": email_url, "SMS_MEMBERS": sms_url}
    wanted = list(SOURCES) if sync_type == SYNC_TYPE_ALL else [sync_type]
    sources = []
    for name in wanted:
        if name not in SOURCES:
            raise SyncError(f"unknown sync type {name!r}")
        url = urls[name]
        if not url:
            raise SyncError(f"no export URL configured for {name}")
        sources.append(SyncSource(sync_type=name, url=url, data_source=SOURCES[name]))
    return sources


def job_sync_type(sources: list[SyncSource]) -> str:
    if len(sources) == 1:
        return sources[0].sync_type
    return SYNC_TYPE_ALL


def determine_status(counters: SyncCounters) -> str:
    if counters.chunks_failed == 0:
        return STATUS_SUCCESS
    if counters.chunks_committed == 0:
        return STATUS_FAILED
    return STATUS_PARTIAL


def summarize(counters: SyncCounters) -> str:
    msg = (
        f"{counters.records_processed}/{counters.records_total} records processed "
        f"({counters.records_inserted} inserted, {counters.records_updated} updated), "
        f"{counters.records_rejected} rejected, {counters.records_rolled_back} rolled back, "
        f"{counters.chunks_failed}/{counters.chunks_total} chunks failed"
    )
    if counters.safe_stop_reason:
        msg += f"; stopped early: {counters.safe_stop_reason}"
    return msg


# ---------------------------------------------------------------------------
# Pre-persistence stages
# ---------------------------------------------------------------------------

def load_source_records(
    source: SyncSource,
    settings: SyncSettings,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[Any]:
    """FETCH → CLEAN → NORMALIZE for one source."""
    log.info("Fetching %s export from %s", source.sync_type, redact_url(source.url))
    text = fetch_export(source.url, settings, session=session, sleep=sleep)
    cleaned = clean_response(text, settings)
    records = extract_records(cleaned, settings.envelope_keys)
    log.info("%s: %d records", source.sync_type, len(records))
    return records


def _stage_of(exc: SyncError) -> str:
    if isinstance(exc, FetchError):
        return "fetch"
    if isinstance(exc, CorruptionError):
        return "clean"
    if isinstance(exc, EnvelopeError):
        return "normalize"
    if isinstance(exc, TargetError):
        return "target"
    return "sync"


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def run_member_sync(
    sync_id: str,
    db_dsn: str,
    sources: list[SyncSource],
    settings: SyncSettings,
    event_id: int | None = None,
    session: requests.Session | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
    created_by: str = "system",
    sleep: Callable[[float], None] = time.sleep,
) -> SyncResult:
    sync_type = job_sync_type(sources)
    result = SyncResult(
        sync_id=sync_id,
        sync_type=sync_type,
        status=STATUS_FAILED,
        message="",
        batch_id=str(uuid.uuid4()),
    )
    counters = result.counters

    progress_conn = psycopg.connect(db_dsn, autocommit=True)
    conn: psycopg.Connection | None = None
    try:
        tracker = ProgressTracker(progress_conn, sync_id, sync_type, created_by=created_by)
        tracker.start()

        # ------ Fetch, clean, normalize every source ------ #
        loaded: list[tuple[SyncSource, list[Any]]] = []
        try:
            for source in sources:
                loaded.append((source, load_source_records(source, settings, session, sleep)))
        except SyncError as exc:
            result.failed_stage = _stage_of(exc)
            result.message = f"{result.failed_stage} failed: {exc}"
            log.error("Sync %s aborted before persistence: %s", sync_id, result.message)
            tracker.finish(STATUS_FAILED, result.message, counters)
            return result

        total = sum(len(records) for _, records in loaded)

        # ------ Resolve target ------ #
        conn = psycopg.connect(db_dsn, autocommit=False)
        try:
            event: TargetEvent = resolve_target_event(conn, settings, event_id)
            if not dry_run:
                mark_event_sync_started(conn, event.id)
                conn.commit()
        except TargetError as exc:
            conn.rollback()
            result.failed_stage = "target"
            result.message = f"target failed: {exc}"
            log.error("Sync %s aborted before persistence: %s", sync_id, result.message)
            tracker.finish(STATUS_FAILED, result.message, counters)
            return result

        result.event_id = event.id
        result.event_created = event.created
        tracker.set_total(total, event.id)
        log.info(
            "Sync %s: %d records → event id=%s (%s) batch=%s%s",
            sync_id, total, event.id, event.event_code, result.batch_id,
            " [dry-run]" if dry_run else "",
        )

        # ------ Batch process ------ #
        for source, records in loaded:
            if counters.safe_stop_reason:
                log.warning("Skipping %s: run already stopped", source.sync_type)
                break
            conn = process_records(
                conn, records, event.id, source.data_source, result.batch_id, settings,
                counters,
                rejects=rejects,
                dry_run=dry_run,
                on_progress=tracker.update,
                reconnect=lambda: psycopg.connect(db_dsn, autocommit=False),
                sleep=sleep,
            )

        # ------ Report ------ #
        result.status = determine_status(counters)
        result.message = summarize(counters)
        if dry_run:
            conn.rollback()
        else:
            try:
                mark_event_sync_finished(conn, event.id, result.status)
                conn.commit()
            except psycopg.Error as exc:
                conn.rollback()
                counters.warnings.append(f"event sync status not updated: {exc}")
                log.warning("Could not update event %s sync status: %s", event.id, exc)
        tracker.finish(result.status, result.message, counters)
        return result

    except Exception as exc:
        result.status = STATUS_FAILED
        if isinstance(exc, psycopg.Error):
            result.message = f"database error: {exc}"
        else:
            result.message = f"unexpected error: {type(exc).__name__}: {exc}"
        log.exception("Sync %s failed", sync_id)
        if conn is not None and not conn.closed and not conn.broken:
            try:
                conn.rollback()
                if result.event_id is not None and not dry_run:
                    mark_event_sync_finished(conn, result.event_id, STATUS_FAILED)
                    conn.commit()
            except psycopg.Error as mark_exc:
                log.warning("Could not mark event %s failed: %s", result.event_id, mark_exc)
        if not progress_conn.closed and not progress_conn.broken:
            try:
                tracker.finish(STATUS_FAILED, result.message, counters)
            except psycopg.Error as finish_exc:
                log.warning("Could not record failure for sync %s: %s", sync_id, finish_exc)
        raise
    finally:
        if conn is not None:
            conn.close()
        progress_conn.close()


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_sync_report(result: SyncResult, dry_run: bool) -> str:
    c = result.counters
    lines = [
        "=== Member Sync Run Report ===",
        f"sync_id              : {result.sync_id}",
        f"sync_type            : {result.sync_type}",
        f"status               : {result.status}",
        f"dry_run              : {dry_run}",
        f"event_id             : {result.event_id}"
        + (" (created)" if result.event_created else ""),
        f"batch_id             : {result.batch_id}",
        "",
        "--- Records ---",
        f"records_total        : {c.records_total}",
        f"records_processed    : {c.records_processed}",
        f"records_inserted     : {c.records_inserted}",
        f"records_updated      : {c.records_updated}",
        f"records_rejected     : {c.records_rejected}",
        f"records_rolled_back  : {c.records_rolled_back}",
        f"concurrent_conflicts : {c.concurrent_conflicts}",
        "",
        "--- Chunks ---",
        f"chunks_total         : {c.chunks_total}",
        f"chunks_committed     : {c.chunks_committed}",
        f"chunks_failed        : {c.chunks_failed}",
    ]
    if result.failed_stage:
        lines.append(f"failed_stage         : {result.failed_stage}")
    if c.safe_stop_reason:
        lines.append(f"safe_stop_reason     : {c.safe_stop_reason}")
    lines += ["", f"message: {result.message}"]
    if c.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in c.warnings[:10]]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option(
    "--sync-type",
    default="EMAIL_MEMBERS",
    type=click.Choice(["EMAIL_MEMBERS", "SMS_MEMBERS", SYNC_TYPE_ALL]),
    show_default=True,
    help="Which member export(s) to sync",
)
@click.option("--email-url-env", default="INFORMER_EMAIL_URL", show_default=True, help="Env var name holding the email export URL")
@click.option("--sms-url-env", default="INFORMER_SMS_URL", show_default=True, help="Env var name holding the SMS export URL")
@click.option("--event-id", default=None, type=int, help="Sync into this event instead of the active one")
@click.option("--sync-id", default=None, help="Job identifier; defaults to a new UUID")
@click.option("--settings-path", default=None, type=click.Path(), help="YAML file overriding sync settings")
@click.option(
    "--rejects-path",
    default=None,
    type=click.Path(),
    help="Rejected records CSV [default: ./artifacts/rejects/member_sync_<sync-id>.csv]",
)
@click.option("--created-by", default="system", show_default=True)
@click.option(
    "--dry-run", is_flag=True, default=False,
    help="Run the whole pipeline but roll back every database write, including a new default event.",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    db_dsn: str,
    sync_type: str,
    email_url_env: str,
    sms_url_env: str,
    event_id: int | None,
    sync_id: str | None,
    settings_path: str | None,
    rejects_path: str | None,
    created_by: str,
    dry_run: bool,
    log_level: str,
) -> None:
    """Sync the member export into the event roster."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sync_id = sync_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{sync_id}] Starting {sync_type} member sync (dry_run={dry_run})")

    try:
        settings = load_settings(Path(settings_path) if settings_path else None)
        # URLs carry the access token: read from env, never from CLI args
        sources = build_sources(
            sync_type,
            os.environ.get(email_url_env, ""),
            os.environ.get(sms_url_env, ""),
        )
    except SyncError as exc:
        click.echo(f"[{sync_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    rejects = RejectWriter(
        Path(rejects_path) if rejects_path
        else Path(f"./artifacts/rejects/member_sync_{sync_id}.csv")
    )
    try:
        result = run_member_sync(
            sync_id=sync_id,
            db_dsn=db_dsn,
            sources=sources,
            settings=settings,
            event_id=event_id,
            rejects=rejects,
            dry_run=dry_run,
            created_by=created_by,
        )
    except psycopg.Error as exc:
        click.echo(f"[{sync_id}] FATAL: run failed with DB error: {exc}", err=True)
        sys.exit(1)
    except Exception as exc:
        click.echo(f"[{sync_id}] FATAL: run failed: {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()

    if dry_run:
        click.echo(f"[{sync_id}] [dry-run] All database changes rolled back.")
    click.echo(build_sync_report(result, dry_run=dry_run))

    report_path = write_run_report(
        sync_id, started_at, sync_type, result.status, dry_run,
        {
            "event_id": result.event_id,
            "batch_id": result.batch_id,
            "failed_stage": result.failed_stage,
            "message": result.message,
            "sources": [redact_url(s.url) for s in sources],
        },
        result.counters,
    )
    click.echo(f"[{sync_id}] Run report: {report_path}")
    if rejects.rows_written:
        click.echo(f"[{sync_id}] {rejects.rows_written} rejected records written to rejects file")

    if result.status != STATUS_SUCCESS:
        click.echo(f"[{sync_id}] Sync finished {result.status}: {result.message}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
