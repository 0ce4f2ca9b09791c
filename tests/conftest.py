"""Shared fixtures: an in-memory record store and a sheet builder.

Neither touches a database or the network.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

import pytest

from roster_sync.shared import StoreWriteError
from roster_sync.source import StaticSource

EVENT_HEADERS = ["tourId", "name", "status", "start", "end", "url", "divs", "divCaps"]
ROSTER_HEADERS = [
    "tourId", "teamId", "teamNameKo", "teamNameEn", "managerName", "managerPhone",
    "category", "division", "uniformHome", "uniformAway", "status",
]
PLAYER_HEADERS = ["teamId", "이름", "backNumber", "position", "birth", "isElite"]


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryStore:
    """RecordStore double with upsert-by-id semantics and failure injection."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {
            "tournaments": {}, "teams": {}, "players": {},
        }
        self.upsert_calls: list[tuple[str, int]] = []
        self.select_calls: list[str] = []
        self.fail_when: list[Callable[[str, Sequence[dict[str, Any]]], bool]] = []
        self.locked = False
        self.lock_acquisitions = 0
        self.closed = False
        self._seq = 0

    def select(self, table: str, columns: Sequence[str]) -> list[dict[str, Any]]:
        self.select_calls.append(table)
        return [{c: rec.get(c) for c in columns} for rec in self.tables[table].values()]

    def upsert_batch(self, table: str, records: Sequence[dict[str, Any]]) -> None:
        self.upsert_calls.append((table, len(records)))
        for pred in self.fail_when:
            if pred(table, records):
                raise StoreWriteError(f"{table}: injected failure")
        ids = [r["id"] for r in records if "id" in r]
        if len(ids) != len(set(ids)):
            raise StoreWriteError("ON CONFLICT DO UPDATE command cannot affect row a second time")
        for rec in records:
            rec = dict(rec)
            if "id" not in rec:
                self._seq += 1
                rec["id"] = f"{table[:4]}-{self._seq}"
            self.tables[table][rec["id"]] = {**self.tables[table].get(rec["id"], {}), **rec}

    def insert(self, table: str, **fields: Any) -> str:
        """Seed a record directly, bypassing call tracking."""
        self._seq += 1
        rec_id = fields.pop("id", None) or f"{table[:4]}-{self._seq}"
        self.tables[table][rec_id] = {**fields, "id": rec_id}
        return rec_id

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self.tables[table].values())

    def acquire_sync_lock(self) -> bool:
        if self.locked:
            return False
        self.locked = True
        self.lock_acquisitions += 1
        return True

    def release_sync_lock(self) -> None:
        self.locked = False

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


# ---------------------------------------------------------------------------
# Sheet builder
# ---------------------------------------------------------------------------

def _matrix(headers: list[str], rows: list[dict[str, str]]) -> list[list[str]]:
    return [list(headers)] + [[r.get(h, "") for h in headers] for r in rows]


@pytest.fixture
def make_source() -> Callable[..., StaticSource]:
    """Build a StaticSource from row dicts keyed by header.

    Pass None for a sheet to leave it out of the document entirely.
    """

    def _make(
        events: list[dict[str, str]] | None = None,
        rosters: list[dict[str, str]] | None = None,
        participants: list[dict[str, str]] | None = None,
        event_headers: list[str] = EVENT_HEADERS,
        roster_headers: list[str] = ROSTER_HEADERS,
        player_headers: list[str] = PLAYER_HEADERS,
    ) -> StaticSource:
        sheets: dict[str, list[list[str]]] = {}
        if events is not None:
            sheets["tournaments"] = _matrix(event_headers, events)
        if rosters is not None:
            sheets["teams"] = _matrix(roster_headers, rosters)
        if participants is not None:
            sheets["players"] = _matrix(player_headers, participants)
        return StaticSource(sheets)

    return _make
