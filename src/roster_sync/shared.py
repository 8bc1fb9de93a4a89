"""roster_sync.shared

Shared pieces used across the sync pipeline stages.
Includes the exception taxonomy, run/chunk counters, RejectWriter, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for every failure raised by the sync pipeline."""


class FetchError(SyncError):
    """Transport-level failure fetching the export (retryable)."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class CorruptionError(SyncError):
    """Response is too corrupted to repair and trust. Never retried."""

    def __init__(self, message: str, ratio: float = 0.0, excerpt: str = "") -> None:
        super().__init__(message)
        self.ratio = ratio
        self.excerpt = excerpt


class EnvelopeError(SyncError):
    """Response JSON has no recognisable record array."""


class TargetError(SyncError):
    """The Event that roster rows should attach to could not be resolved."""


class RecordError(SyncError):
    """A single source record could not be mapped or written."""


class ChunkError(SyncError):
    """A chunk transaction failed and was rolled back."""

    def __init__(self, message: str, chunk_index: int, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.cause = cause


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected records."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8", errors="backslashreplace")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


def reject_row(record: Any, index: int, data_source: str) -> dict[str, str]:
    """Flatten a raw JSON record into the fixed reject CSV shape."""
    number = ""
    if isinstance(record, dict):
        number = str(record.get("membershipNumber") or "")
    return {
        "data_source": data_source,
        "record_index": str(index),
        "membership_number": number,
        "raw_json": json.dumps(record, default=str, ensure_ascii=False),
    }


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ChunkCounters:
    """Accumulator for one chunk; merged into SyncCounters only on commit."""

    records_inserted: int = 0
    records_updated: int = 0
    records_rejected: int = 0
    concurrent_conflicts: int = 0
    rejects: list[tuple[dict[str, str], str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return self.records_inserted + self.records_updated


@dataclass
class SyncCounters:
    records_total: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_rejected: int = 0
    records_rolled_back: int = 0
    concurrent_conflicts: int = 0
    chunks_total: int = 0
    chunks_committed: int = 0
    chunks_failed: int = 0
    safe_stop_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return self.records_inserted + self.records_updated

    @property
    def errors_total(self) -> int:
        return self.records_rejected + self.records_rolled_back

    def merge(self, chunk: ChunkCounters) -> None:
        self.records_inserted += chunk.records_inserted
        self.records_updated += chunk.records_updated
        self.records_rejected += chunk.records_rejected
        self.concurrent_conflicts += chunk.concurrent_conflicts
        self.warnings.extend(chunk.warnings)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["records_processed"] = self.records_processed
        d["errors_total"] = self.errors_total
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    sync_id: str,
    started_at: str,
    sync_type: str,
    status: str,
    dry_run: bool,
    details: dict[str, Any],
    counters: SyncCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "sync_id": sync_id,
        "sync_type": sync_type,
        "status": status,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **details,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{sync_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
