"""roster_sync.sync_events

Event stage: tournament sheet → tournaments table.

Identity resolution per row:
  1. legacy id (the sheet's tourId column) matches an existing legacy_id
  2. otherwise the event name matches an existing name, unless the name is
     the "Untitled" placeholder or the matched record already carries a
     different legacy id
  3. otherwise no id → the store inserts a new record

Any store or source failure is fatal: the roster stage needs every event's
surrogate key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from roster_sync.headers import HEADER_ALIASES, SHEET_CANDIDATES, RowAccessor
from roster_sync.normalize import parse_json_mapping
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

STAGE = "Tournaments"
TABLE = "tournaments"
DEFAULT_STATUS = "open"
DEFAULT_NAME = "Untitled"


@dataclass
class EventKeyMaps:
    """Authoritative event identifiers after the stage has committed."""

    by_legacy_id: dict[str, str] = field(default_factory=dict)
    by_name: dict[str, str] = field(default_factory=dict)
    legacy_by_id: dict[str, str] = field(default_factory=dict)


def fetch_event_maps(store: RecordStore) -> EventKeyMaps:
    maps = EventKeyMaps()
    for rec in store.select(TABLE, ["id", "legacy_id", "name"]):
        if rec.get("legacy_id"):
            maps.by_legacy_id[str(rec["legacy_id"])] = rec["id"]
            maps.legacy_by_id[rec["id"]] = str(rec["legacy_id"])
        if rec.get("name"):
            maps.by_name[rec["name"]] = rec["id"]
    return maps


def build_event_payload(accessor: RowAccessor, row: Sequence[str]) -> dict[str, Any] | None:
    """Return the upsert payload for one sheet row, or None to skip it."""
    legacy_id = accessor.get(row, "tourId")
    name = accessor.get(row, "name")
    if not legacy_id and not name:
        return None
    return {
        "legacy_id": legacy_id,
        "name": name or DEFAULT_NAME,
        "status": accessor.get(row, "status") or DEFAULT_STATUS,
        "start_date": accessor.get(row, "start"),
        "end_date": accessor.get(row, "end"),
        "reg_start_at": accessor.get(row, "regStart"),
        "reg_end_at": accessor.get(row, "regEnd"),
        "details_url": accessor.get(row, "url"),
        "divs": parse_json_mapping(accessor.get(row, "divs")),
        "div_caps": parse_json_mapping(accessor.get(row, "divCaps")),
    }


def resolve_event_id(payload: Mapping[str, Any], existing: EventKeyMaps) -> str | None:
    """Legacy-id match wins over name match.

    A name match never claims a record that belongs to another legacy id,
    and the placeholder name never matches at all.
    """
    legacy_id = payload.get("legacy_id")
    if legacy_id and legacy_id in existing.by_legacy_id:
        return existing.by_legacy_id[legacy_id]
    if payload["name"] == DEFAULT_NAME:
        return None
    event_id = existing.by_name.get(payload["name"])
    if event_id is None:
        return None
    owner = existing.legacy_by_id.get(event_id)
    if legacy_id and owner and owner != legacy_id:
        return None
    return event_id


def run_event_stage(
    source: TabularSource,
    store: RecordStore,
    log: SyncLog,
    counters: SyncCounters,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    candidates: Sequence[str] = SHEET_CANDIDATES["events"],
    aliases: Mapping[str, Sequence[str]] = HEADER_ALIASES,
    rejects: Any = None,
) -> EventKeyMaps:
    """Upsert every event row and return the rebuilt key maps.

    Raises:
        StageError: On sheet lookup/read failure or any rejected chunk.
    """
    rejects = rejects or NullRejectWriter()
    try:
        title, rows = read_sheet(source, candidates)
    except SourceReadError as exc:
        log.error(STAGE, f"Cannot read sheet: {exc}")
        raise StageError(STAGE, str(exc)) from exc
    log.info(STAGE, f"Reading sheet: {title}")

    if len(rows) > 1:
        accessor = RowAccessor(rows[0], aliases)
        existing = fetch_event_maps(store)

        keyed: list[tuple[str, dict[str, Any]]] = []
        claimed: dict[str, str] = {}
        for i, row in enumerate(rows[1:], start=2):
            if not any((c or "").strip() for c in row):
                continue
            counters.events_rows_read += 1
            payload = build_event_payload(accessor, row)
            if payload is None:
                counters.events_rows_skipped += 1
                log.warning(STAGE, f"row {i}: no id and no name, skipped")
                rejects.write(
                    {**accessor.as_dict(row), "_sheet": title, "_row_number": str(i)},
                    "missing_event_identity",
                )
                continue
            event_id = resolve_event_id(payload, existing)
            if event_id and payload["legacy_id"]:
                # a name-matched record without a legacy id goes to the first claimant
                owner = claimed.setdefault(event_id, payload["legacy_id"])
                if owner != payload["legacy_id"]:
                    event_id = None
            if event_id:
                payload["id"] = event_id
                key = f"id:{event_id}"
            elif payload["legacy_id"]:
                key = f"legacy:{payload['legacy_id']}"
            else:
                key = f"name:{payload['name']}"
            keyed.append((key, payload))

        payloads, collapsed = collapse_by_key(keyed)
        if collapsed:
            counters.events_collapsed += collapsed
            log.warning(STAGE, f"{collapsed} duplicate row(s) collapsed into later rows")

        if payloads:
            log.info(STAGE, f"Upserting {len(payloads)} records...")
            for idx, chunk in chunked(payloads, chunk_size):
                try:
                    store.upsert_batch(TABLE, chunk)
                except StoreWriteError as exc:
                    log.error(STAGE, f"chunk {idx} failed: {exc}")
                    raise StageError(
                        STAGE, f"Tournament upsert failed at chunk {idx}: {exc}"
                    ) from exc
            updated = sum(1 for p in payloads if "id" in p)
            counters.events_updated += updated
            counters.events_inserted += len(payloads) - updated
    else:
        log.info(STAGE, "Sheet has no data rows")

    maps = fetch_event_maps(store)
    log.info(STAGE, f"{len(maps.by_legacy_id)} legacy ids, {len(maps.by_name)} names mapped")
    return maps
