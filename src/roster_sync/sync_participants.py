"""roster_sync.sync_participants

Participant stage: player sheet → players table.

The owning team is resolved only through the row's teamId against the
roster stage's legacy-id map. Player sheets often omit the manager phone,
so the team's composite key cannot be re-derived here; rows without a
mapped teamId are skipped.

Identity within a team is (team key, player name).

Player data is lower-criticality: an unreadable sheet or a rejected chunk
is logged and counted, never raised.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from roster_sync.headers import HEADER_ALIASES, SHEET_CANDIDATES, RowAccessor
from roster_sync.normalize import parse_flag
from roster_sync.shared import (
    DEFAULT_CHUNK_SIZE,
    NullRejectWriter,
    SourceReadError,
    StoreWriteError,
    SyncCounters,
    SyncLog,
    chunked,
    collapse_by_key,
)
from roster_sync.source import TabularSource, read_sheet
from roster_sync.store import RecordStore
from roster_sync.sync_rosters import RosterKeyMaps

STAGE = "Players"
TABLE = "players"


def participant_key(roster_key: str, name: str) -> str:
    return f"{roster_key}::{name}"


def fetch_participant_map(store: RecordStore) -> dict[str, str]:
    return {
        participant_key(rec["team_id"], rec["name"]): rec["id"]
        for rec in store.select(TABLE, ["id", "team_id", "name"])
    }


def build_participant_payload(
    accessor: RowAccessor,
    row: Sequence[str],
    roster_key: str,
) -> dict[str, Any] | None:
    name = accessor.get(row, "playerName")
    if not name:
        return None
    return {
        "team_id": roster_key,
        "name": name,
        "back_number": accessor.get(row, "backNumber"),
        "position": accessor.get(row, "position"),
        "birth_date": accessor.get(row, "birth"),
        "is_elite": parse_flag(accessor.get(row, "isElite")),
    }


def run_participant_stage(
    source: TabularSource,
    store: RecordStore,
    rosters: RosterKeyMaps,
    log: SyncLog,
    counters: SyncCounters,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    candidates: Sequence[str] = SHEET_CANDIDATES["participants"],
    aliases: Mapping[str, Sequence[str]] = HEADER_ALIASES,
    rejects: Any = None,
) -> None:
    rejects = rejects or NullRejectWriter()
    try:
        title, rows = read_sheet(source, candidates)
    except SourceReadError as exc:
        log.warning(STAGE, f"Cannot read sheet, stage skipped: {exc}")
        return
    log.info(STAGE, f"Reading sheet: {title}")
    if len(rows) <= 1:
        log.info(STAGE, "Sheet has no data rows")
        return

    accessor = RowAccessor(rows[0], aliases)
    existing = fetch_participant_map(store)

    keyed: list[tuple[str, dict[str, Any]]] = []
    for i, row in enumerate(rows[1:], start=2):
        if not any((c or "").strip() for c in row):
            continue
        counters.participants_rows_read += 1
        row_ctx = {**accessor.as_dict(row), "_sheet": title, "_row_number": str(i)}

        legacy_team_id = accessor.get(row, "teamId")
        roster_key = rosters.by_legacy_id.get(legacy_team_id) if legacy_team_id else None
        if not roster_key:
            counters.participants_unresolved_roster += 1
            counters.participants_rows_skipped += 1
            log.warning(STAGE, f"row {i}: team {legacy_team_id!r} not mapped, skipped")
            rejects.write(row_ctx, "unresolved_team")
            continue

        payload = build_participant_payload(accessor, row, roster_key)
        if payload is None:
            counters.participants_rows_skipped += 1
            log.warning(STAGE, f"row {i}: player name missing, skipped")
            rejects.write(row_ctx, "missing_player_name")
            continue

        key = participant_key(roster_key, payload["name"])
        player_key = existing.get(key)
        if player_key:
            payload["id"] = player_key
        keyed.append((key, payload))

    payloads, collapsed = collapse_by_key(keyed)
    if collapsed:
        counters.participants_collapsed += collapsed
        log.warning(STAGE, f"{collapsed} duplicate row(s) collapsed into later rows")
    if not payloads:
        return

    log.info(STAGE, f"Upserting {len(payloads)} records...")
    for idx, chunk in chunked(payloads, chunk_size):
        try:
            store.upsert_batch(TABLE, chunk)
        except StoreWriteError as exc:
            counters.participants_chunks_failed += 1
            counters.participants_rows_failed += len(chunk)
            log.error(STAGE, f"chunk {idx} ({len(chunk)} records) failed, continuing: {exc}")
            continue
        updated = sum(1 for p in chunk if "id" in p)
        counters.participants_updated += updated
        counters.participants_inserted += len(chunk) - updated
