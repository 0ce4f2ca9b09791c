"""roster_sync.sync_rosters

Roster stage: team sheet → teams table.

A team row has no reliable identifier of its own, so identity is the
composite natural key (owning event key, team name, manager phone).
The owning event comes from the row's tourId via the event stage's
legacy-id map; rows whose event cannot be resolved are skipped.

Chunks are committed one by one. A rejected chunk stops the stage (the
participant stage depends on team keys) but earlier chunks stay in place.

After upserting, two maps are rebuilt for the participant stage:
  by_composite: from a full re-read of teams
  by_legacy_id: from a second pass over the sheet rows carrying teamId
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from roster_sync.headers import HEADER_ALIASES, SHEET_CANDIDATES, RowAccessor
from roster_sync.shared import (
    DEFAULT_CHUNK_SIZE,
    NullRejectWriter,
    SourceReadError,
    StageError,
    StoreWriteError,
    SyncCounters,
    SyncLog,
    chunked,
    collapse_by_key,
)
from roster_sync.source import TabularSource, read_sheet
from roster_sync.store import RecordStore
from roster_sync.sync_events import EventKeyMaps

STAGE = "Teams"
TABLE = "teams"
PLACEHOLDER_PHONE = "000-0000-0000"
PLACEHOLDER_MANAGER = "unspecified"
DEFAULT_STATUS = "pending"


@dataclass
class RosterKeyMaps:
    by_composite: dict[str, str] = field(default_factory=dict)
    by_legacy_id: dict[str, str] = field(default_factory=dict)


def composite_key(event_key: str, name: str, phone: str) -> str:
    return f"{event_key}::{name}::{phone}"


def fetch_composite_map(store: RecordStore) -> dict[str, str]:
    out: dict[str, str] = {}
    for rec in store.select(TABLE, ["id", "tournament_id", "name_ko", "manager_phone"]):
        out[composite_key(rec["tournament_id"], rec["name_ko"], rec["manager_phone"])] = rec["id"]
    return out


def resolve_owning_event(
    accessor: RowAccessor,
    row: Sequence[str],
    events: EventKeyMaps,
) -> str | None:
    return events.by_legacy_id.get(accessor.get(row, "tourId") or "")


def build_roster_payload(
    accessor: RowAccessor,
    row: Sequence[str],
    event_key: str,
) -> dict[str, Any] | None:
    """Return the upsert payload for one team row, or None when the name is blank."""
    name = accessor.get(row, "teamNameKo")
    if not name:
        return None
    return {
        "tournament_id": event_key,
        "name_ko": name,
        "name_en": accessor.get(row, "teamNameEn"),
        "manager_name": accessor.get(row, "managerName") or PLACEHOLDER_MANAGER,
        "manager_phone": accessor.get(row, "managerPhone") or PLACEHOLDER_PHONE,
        "category": accessor.get(row, "category"),
        "division": accessor.get(row, "division"),
        "uniform_home": accessor.get(row, "uniformHome"),
        "uniform_away": accessor.get(row, "uniformAway"),
        "payment_status": accessor.get(row, "paymentStatus") or DEFAULT_STATUS,
        "status": accessor.get(row, "status") or DEFAULT_STATUS,
    }


def build_legacy_map(
    accessor: RowAccessor,
    data_rows: Sequence[Sequence[str]],
    events: EventKeyMaps,
    by_composite: Mapping[str, str],
) -> dict[str, str]:
    """Map each row's own teamId to the team's surrogate key.

    Rows without teamId, without a resolvable event, or whose composite key
    is not in the store are left out.
    """
    out: dict[str, str] = {}
    for row in data_rows:
        legacy_id = accessor.get(row, "teamId")
        if not legacy_id:
            continue
        event_key = resolve_owning_event(accessor, row, events)
        if not event_key:
            continue
        name = accessor.get(row, "teamNameKo")
        phone = accessor.get(row, "managerPhone") or PLACEHOLDER_PHONE
        team_key = by_composite.get(composite_key(event_key, name or "", phone))
        if team_key:
            out[legacy_id] = team_key
    return out


def run_roster_stage(
    source: TabularSource,
    store: RecordStore,
    events: EventKeyMaps,
    log: SyncLog,
    counters: SyncCounters,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    candidates: Sequence[str] = SHEET_CANDIDATES["rosters"],
    aliases: Mapping[str, Sequence[str]] = HEADER_ALIASES,
    rejects: Any = None,
) -> RosterKeyMaps:
    """Upsert every resolvable team row and return the rebuilt key maps.

    Raises:
        StageError: On sheet lookup/read failure or a rejected chunk.
    """
    rejects = rejects or NullRejectWriter()
    try:
        title, rows = read_sheet(source, candidates)
    except SourceReadError as exc:
        log.error(STAGE, f"Cannot read sheet: {exc}")
        raise StageError(STAGE, str(exc)) from exc
    log.info(STAGE, f"Reading sheet: {title}")

    maps = RosterKeyMaps()
    if len(rows) <= 1:
        log.info(STAGE, "Sheet has no data rows")
        maps.by_composite = fetch_composite_map(store)
        return maps

    accessor = RowAccessor(rows[0], aliases)
    data_rows = rows[1:]
    existing = fetch_composite_map(store)

    keyed: list[tuple[str, dict[str, Any]]] = []
    for i, row in enumerate(data_rows, start=2):
        if not any((c or "").strip() for c in row):
            continue
        counters.rosters_rows_read += 1
        row_ctx = {**accessor.as_dict(row), "_sheet": title, "_row_number": str(i)}

        event_key = resolve_owning_event(accessor, row, events)
        if not event_key:
            counters.rosters_orphaned += 1
            counters.rosters_rows_skipped += 1
            log.warning(
                STAGE,
                f"row {i}: tournament {accessor.get(row, 'tourId')!r} not found, skipped",
            )
            rejects.write(row_ctx, "unresolved_tournament")
            continue

        payload = build_roster_payload(accessor, row, event_key)
        if payload is None:
            counters.rosters_rows_skipped += 1
            log.warning(STAGE, f"row {i}: team name missing, skipped")
            rejects.write(row_ctx, "missing_team_name")
            continue

        key = composite_key(event_key, payload["name_ko"], payload["manager_phone"])
        team_key = existing.get(key)
        if team_key:
            payload["id"] = team_key
        keyed.append((key, payload))

    payloads, collapsed = collapse_by_key(keyed)
    if collapsed:
        counters.rosters_collapsed += collapsed
        log.warning(STAGE, f"{collapsed} duplicate row(s) collapsed into later rows")

    if payloads:
        log.info(STAGE, f"Upserting {len(payloads)} records...")
        for idx, chunk in chunked(payloads, chunk_size):
            try:
                store.upsert_batch(TABLE, chunk)
            except StoreWriteError as exc:
                log.error(STAGE, f"chunk {idx} (rows from offset {idx * chunk_size}) failed: {exc}")
                raise StageError(
                    STAGE,
                    f"Team upsert failed at chunk {idx} (offset {idx * chunk_size}): {exc}",
                ) from exc
        updated = sum(1 for p in payloads if "id" in p)
        counters.rosters_updated += updated
        counters.rosters_inserted += len(payloads) - updated

    maps.by_composite = fetch_composite_map(store)
    maps.by_legacy_id = build_legacy_map(accessor, data_rows, events, maps.by_composite)
    counters.rosters_legacy_ids_mapped = len(maps.by_legacy_id)
    log.info(
        STAGE,
        f"{len(maps.by_composite)} teams in store, {len(maps.by_legacy_id)} legacy team ids mapped",
    )
    return maps
