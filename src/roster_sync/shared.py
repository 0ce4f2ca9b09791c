"""roster_sync.shared

Shared utilities used by all three sync stages: the exception taxonomy,
the per-run log trail, run counters, RejectWriter, chunking, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Sequence

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for sync failures."""


class ConfigurationError(SyncError):
    """Missing credentials, DSN or document identifier. Raised before any stage runs."""


class SourceReadError(SyncError):
    """A sheet could not be located or read."""


class StoreWriteError(SyncError):
    """The store rejected a batch upsert."""


class StageError(SyncError):
    """A stage failed in a way that later stages cannot recover from."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


# ---------------------------------------------------------------------------
# SyncLog
# ---------------------------------------------------------------------------

class SyncLog:
    """Ordered log trail returned to the caller of a sync run.

    Every entry is also sent to the module logger.
    """

    def __init__(self) -> None:
        self._entries: list[str] = []

    def info(self, stage: str, message: str) -> None:
        self._add(logging.INFO, stage, message)

    def warning(self, stage: str, message: str) -> None:
        self._add(logging.WARNING, stage, message)

    def error(self, stage: str, message: str) -> None:
        self._add(logging.ERROR, stage, message)

    def _add(self, level: int, stage: str, message: str) -> None:
        entry = f"[{stage}] {message}"
        self._entries.append(entry)
        log.log(level, entry)

    @property
    def entries(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# SyncCounters
# ---------------------------------------------------------------------------

@dataclass
class SyncCounters:
    # Events
    events_rows_read: int = 0
    events_rows_skipped: int = 0
    events_updated: int = 0
    events_inserted: int = 0
    events_collapsed: int = 0
    # Rosters
    rosters_rows_read: int = 0
    rosters_rows_skipped: int = 0
    rosters_orphaned: int = 0
    rosters_updated: int = 0
    rosters_inserted: int = 0
    rosters_collapsed: int = 0
    rosters_legacy_ids_mapped: int = 0
    # Participants
    participants_rows_read: int = 0
    participants_rows_skipped: int = 0
    participants_unresolved_roster: int = 0
    participants_updated: int = 0
    participants_inserted: int = 0
    participants_collapsed: int = 0
    participants_chunks_failed: int = 0
    participants_rows_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped source rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.writer(self._fh)
            self._writer.writerow(["_sheet", "_row_number", "_reject_reason", "_row_json"])
        self._writer.writerow([
            row.get("_sheet", ""),
            row.get("_row_number", ""),
            reason,
            json.dumps(
                {k: v for k, v in row.items() if not k.startswith("_")},
                ensure_ascii=False,
            ),
        ])
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


class NullRejectWriter:
    """Discards rejected rows."""

    def write(self, row: dict[str, str], reason: str) -> None:
        pass

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

def chunked(records: Sequence[dict[str, Any]], size: int) -> Iterator[tuple[int, list[dict[str, Any]]]]:
    """Yield (chunk_index, chunk) pairs of at most `size` records."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    for idx, offset in enumerate(range(0, len(records), size)):
        yield idx, list(records[offset:offset + size])


def collapse_by_key(
    payloads: list[tuple[str, dict[str, Any]]],
) -> tuple[list[dict[str, Any]], int]:
    """Keep the last payload per identity key, preserving first-seen order.

    Returns (payloads, collapsed_count).
    """
    by_key: dict[str, dict[str, Any]] = {}
    for key, payload in payloads:
        by_key[key] = payload
    return list(by_key.values()), len(payloads) - len(by_key)


# ---------------------------------------------------------------------------
# Report writers
# ---------------------------------------------------------------------------

def build_sync_report(counters: SyncCounters, success: bool, error: str | None) -> str:
    lines = [
        "=== Registration Sheet Sync Report ===",
        f"success          : {success}",
        "",
        "--- Events ---",
        f"rows_read        : {counters.events_rows_read}",
        f"rows_skipped     : {counters.events_rows_skipped}",
        f"updated          : {counters.events_updated}",
        f"inserted         : {counters.events_inserted}",
        f"collapsed        : {counters.events_collapsed}",
        "",
        "--- Rosters ---",
        f"rows_read        : {counters.rosters_rows_read}",
        f"rows_skipped     : {counters.rosters_rows_skipped}",
        f"orphaned         : {counters.rosters_orphaned}",
        f"updated          : {counters.rosters_updated}",
        f"inserted         : {counters.rosters_inserted}",
        f"collapsed        : {counters.rosters_collapsed}",
        f"legacy_ids_mapped: {counters.rosters_legacy_ids_mapped}",
        "",
        "--- Participants ---",
        f"rows_read        : {counters.participants_rows_read}",
        f"rows_skipped     : {counters.participants_rows_skipped}",
        f"unresolved_roster: {counters.participants_unresolved_roster}",
        f"updated          : {counters.participants_updated}",
        f"inserted         : {counters.participants_inserted}",
        f"collapsed        : {counters.participants_collapsed}",
        f"chunks_failed    : {counters.participants_chunks_failed}",
        f"rows_failed      : {counters.participants_rows_failed}",
    ]
    if error:
        lines += ["", f"error            : {error}"]
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source_paths: dict[str, str],
    result: dict[str, Any],
    counters: SyncCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **source_paths,
        "success": result.get("success"),
        "error": result.get("error"),
        "logs": result.get("logs", []),
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, ensure_ascii=False, default=str))
    return report_path
