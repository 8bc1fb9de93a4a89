"""Unit tests for chunked batch processing.

The database connection is a MagicMock; the upsert itself is patched so the
tests exercise only chunking, transaction boundaries and the failure budget.
"""

from __future__ import annotations

import csv
from unittest.mock import MagicMock, call, patch

import psycopg
import pytest

from roster_sync.batch import FAILURE_BUDGET_EXHAUSTED, iter_chunks, process_records
from roster_sync.config import SyncSettings
from roster_sync.shared import RecordError, RejectWriter, SyncCounters

SETTINGS = SyncSettings(chunk_size=2, chunk_pause_seconds=0.0)


def _conn() -> MagicMock:
    conn = MagicMock()
    conn.closed = False
    conn.broken = False
    return conn


def _records(n: int) -> list[dict]:
    return [{"membershipNumber": str(1000 + i), "fore1": "M", "surname": str(i)} for i in range(n)]


def _fake_upsert(conn, event_id, member, data_source, batch_id, imported_at, counters):
    counters.records_inserted += 1
    return "inserted"


def _run(conn, records, settings=SETTINGS, **kwargs):
    counters = SyncCounters()
    with patch("roster_sync.batch.upsert_event_member", side_effect=_fake_upsert):
        out = process_records(
            conn, records, 1, "INFORMER_EMAIL_DIRECT", "batch-1", settings, counters,
            sleep=kwargs.pop("sleep", MagicMock()), **kwargs,
        )
    return out, counters


def test_iter_chunks():
    assert list(iter_chunks([1, 2, 3, 4, 5], 2)) == [(0, [1, 2]), (2, [3, 4]), (4, [5])]


class TestProcessRecords:
    def test_all_chunks_commit(self):
        conn = _conn()
        out, counters = _run(conn, _records(5))
        assert out is conn
        assert counters.records_total == 5
        assert counters.records_inserted == 5
        assert counters.chunks_total == 3
        assert counters.chunks_committed == 3
        assert counters.chunks_failed == 0
        assert conn.commit.call_count == 3
        conn.rollback.assert_not_called()

    def test_third_chunk_failure_isolated(self):
        conn = _conn()
        conn.commit.side_effect = [None, None, psycopg.OperationalError("disk full"), None, None]
        _, counters = _run(conn, _records(10))
        assert counters.chunks_committed == 4
        assert counters.chunks_failed == 1
        assert counters.records_inserted == 8
        assert counters.records_rolled_back == 2
        assert counters.safe_stop_reason is None
        conn.rollback.assert_called_once()
        assert any("chunk 3/5" in w for w in counters.warnings)

    def test_failure_budget_stops_run(self):
        conn = _conn()
        conn.commit.side_effect = psycopg.OperationalError("down")
        settings = SyncSettings(chunk_size=2, chunk_pause_seconds=0.0, max_failed_chunks=1)
        _, counters = _run(conn, _records(10), settings=settings)
        assert counters.chunks_failed == 2
        assert counters.chunks_committed == 0
        assert counters.safe_stop_reason == FAILURE_BUDGET_EXHAUSTED
        assert conn.commit.call_count == 2
        assert counters.records_inserted == 0

    def test_invalid_records_rejected_siblings_continue(self, tmp_path):
        conn = _conn()
        rejects = RejectWriter(tmp_path / "rejects.csv")
        records = [
            {"membershipNumber": "1"},
            {"fore1": "No Number"},
            "not an object",
            {"membershipNumber": "  "},
        ]
        _, counters = _run(conn, records, rejects=rejects)
        rejects.close()
        assert counters.records_inserted == 1
        assert counters.records_rejected == 3
        assert counters.chunks_committed == 2
        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert [r["record_index"] for r in rows] == ["1", "2", "3"]
        assert all(r["_reject_reason"].startswith("invalid_record") for r in rows)

    def test_db_error_rolls_back_to_savepoint(self):
        conn = _conn()
        counters = SyncCounters()

        def upsert(conn_, event_id, member, data_source, batch_id, imported_at, chunk_counters):
            if member.membership_number == "1001":
                raise psycopg.errors.CheckViolation("bad value")
            chunk_counters.records_updated += 1
            return "updated"

        with patch("roster_sync.batch.upsert_event_member", side_effect=upsert):
            process_records(
                conn, _records(2), 1, "INFORMER_SMS_DIRECT", "b", SETTINGS, counters,
                sleep=MagicMock(),
            )
        assert counters.records_updated == 1
        assert counters.records_rejected == 1
        assert counters.chunks_committed == 1
        executed = [c.args[0] for c in conn.execute.call_args_list]
        assert executed == [
            "SAVEPOINT rec_0",
            "RELEASE SAVEPOINT rec_0",
            "SAVEPOINT rec_1",
            "ROLLBACK TO SAVEPOINT rec_1",
        ]
        assert any("1001" in w for w in counters.warnings)

    def test_unencodable_text_rejects_only_that_record(self, tmp_path):
        conn = _conn()
        counters = SyncCounters()
        rejects = RejectWriter(tmp_path / "rejects.csv")

        def upsert(conn_, event_id, member, data_source, batch_id, imported_at, chunk_counters):
            if member.membership_number == "1001":
                raise UnicodeEncodeError("utf-8", "bad\ud800", 3, 4, "surrogates not allowed")
            chunk_counters.records_inserted += 1
            return "inserted"

        records = _records(2)
        records[1]["surname"] = "bad\ud800"
        with patch("roster_sync.batch.upsert_event_member", side_effect=upsert):
            process_records(
                conn, records, 1, "INFORMER_EMAIL_DIRECT", "b", SETTINGS, counters,
                rejects=rejects, sleep=MagicMock(),
            )
        rejects.close()
        assert counters.records_inserted == 1
        assert counters.records_rejected == 1
        assert counters.chunks_committed == 1
        assert counters.chunks_failed == 0
        conn.commit.assert_called_once()
        executed = [c.args[0] for c in conn.execute.call_args_list]
        assert "ROLLBACK TO SAVEPOINT rec_1" in executed
        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert [r["membership_number"] for r in rows] == ["1001"]
        assert rows[0]["_reject_reason"].startswith("invalid_record")

    def test_record_error_from_upsert_rejected(self):
        conn = _conn()
        counters = SyncCounters()

        def upsert(conn_, event_id, member, data_source, batch_id, imported_at, chunk_counters):
            if member.membership_number == "1000":
                raise RecordError("conflicting event_member not visible")
            chunk_counters.records_inserted += 1
            return "inserted"

        with patch("roster_sync.batch.upsert_event_member", side_effect=upsert):
            process_records(
                conn, _records(2), 1, "INFORMER_EMAIL_DIRECT", "b", SETTINGS, counters,
                sleep=MagicMock(),
            )
        assert counters.records_inserted == 1
        assert counters.records_rejected == 1
        assert counters.chunks_committed == 1

    def test_unexpected_chunk_error_isolated(self):
        conn = _conn()
        conn.commit.side_effect = [None, RuntimeError("driver bug"), None]
        _, counters = _run(conn, _records(6))
        assert counters.chunks_committed == 2
        assert counters.chunks_failed == 1
        assert counters.records_inserted == 4
        assert counters.records_rolled_back == 2
        assert any("chunk 2/3" in w and "RuntimeError" in w for w in counters.warnings)

    def test_dry_run_rolls_back_every_chunk(self):
        conn = _conn()
        _, counters = _run(conn, _records(3), dry_run=True)
        conn.commit.assert_not_called()
        conn.rollback.assert_not_called()
        assert counters.chunks_committed == 2
        executed = [c.args[0] for c in conn.execute.call_args_list]
        assert executed.count("SAVEPOINT dry_run_chunk") == 2
        assert executed.count("ROLLBACK TO SAVEPOINT dry_run_chunk") == 2
        assert executed[-2:] == [
            "ROLLBACK TO SAVEPOINT dry_run_chunk",
            "RELEASE SAVEPOINT dry_run_chunk",
        ]

    def test_dry_run_failed_chunk_keeps_outer_transaction(self):
        conn = _conn()

        def upsert(conn_, event_id, member, data_source, batch_id, imported_at, chunk_counters):
            if member.membership_number == "1000":
                raise RuntimeError("unexpected")
            chunk_counters.records_inserted += 1
            return "inserted"

        counters = SyncCounters()
        with patch("roster_sync.batch.upsert_event_member", side_effect=upsert):
            process_records(
                conn, _records(4), 1, "INFORMER_EMAIL_DIRECT", "b", SETTINGS, counters,
                dry_run=True, sleep=MagicMock(),
            )
        assert counters.chunks_failed == 1
        assert counters.chunks_committed == 1
        conn.rollback.assert_not_called()

    def test_failed_chunk_records_written_to_rejects(self, tmp_path):
        conn = _conn()
        conn.commit.side_effect = [psycopg.OperationalError("boom"), None]
        rejects = RejectWriter(tmp_path / "rejects.csv")
        _, counters = _run(conn, _records(3), rejects=rejects)
        rejects.close()
        assert rejects.rows_written == 2
        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert [r["membership_number"] for r in rows] == ["1000", "1001"]
        assert rows[0]["_reject_reason"].startswith("chunk_failed")

    def test_broken_connection_replaced(self):
        conn = _conn()
        conn.commit.side_effect = psycopg.OperationalError("server closed the connection")
        conn.rollback.side_effect = psycopg.OperationalError("no connection")
        fresh = _conn()
        reconnect = MagicMock(return_value=fresh)
        out, counters = _run(conn, _records(4), reconnect=reconnect)
        assert out is fresh
        reconnect.assert_called_once()
        conn.close.assert_called_once()
        assert fresh.commit.call_count == 1
        assert counters.chunks_failed == 1
        assert counters.chunks_committed == 1

    def test_progress_callback_and_pause(self):
        conn = _conn()
        on_progress = MagicMock()
        sleep = MagicMock()
        settings = SyncSettings(chunk_size=2, chunk_pause_seconds=0.5)
        _run(conn, _records(5), settings=settings, on_progress=on_progress, sleep=sleep)
        assert on_progress.call_count == 3
        assert sleep.call_args_list == [call(0.5), call(0.5)]

    def test_empty_input(self):
        conn = _conn()
        _, counters = _run(conn, [])
        assert counters.chunks_total == 0
        conn.commit.assert_not_called()


@pytest.mark.parametrize("failing", [0, 1])
def test_counters_merge_only_on_commit(failing):
    conn = _conn()
    side_effect = [None, None]
    side_effect[failing] = psycopg.OperationalError("x")
    conn.commit.side_effect = side_effect
    _, counters = _run(conn, _records(4))
    assert counters.records_inserted == 2
    assert counters.records_rolled_back == 2
