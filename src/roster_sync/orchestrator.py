"""roster_sync.orchestrator

Runs the three sync stages in dependency order:

  EVENTS → ROSTERS → PARTICIPANTS → DONE
       ↘        ↘
        FAILED   FAILED

No stage starts before its predecessor's key maps are rebuilt. A fatal
error in the event or roster stage ends the run in FAILED with the partial
log; participant-stage chunk failures are logged and the run still ends in
DONE. Nothing already committed is rolled back: re-running the whole sync
is the recovery path, and it is safe because every stage is idempotent.

Only one run may be active per store; the store's sync lock enforces it.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from roster_sync.config import SyncConfig
from roster_sync.headers import AliasConfig
from roster_sync.shared import (
    DEFAULT_CHUNK_SIZE,
    ConfigurationError,
    NullRejectWriter,
    SyncCounters,
    SyncError,
    SyncLog,
)
from roster_sync.source import TabularSource
from roster_sync.store import RecordStore
from roster_sync.sync_events import run_event_stage
from roster_sync.sync_participants import run_participant_stage
from roster_sync.sync_rosters import run_roster_stage

log = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "sync already in progress"


class SyncState(enum.Enum):
    EVENTS = "events"
    ROSTERS = "rosters"
    PARTICIPANTS = "participants"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncResult:
    success: bool
    logs: list[str]
    error: str | None = None
    state: SyncState = SyncState.DONE
    counters: SyncCounters = field(default_factory=SyncCounters)

    def to_dict(self) -> dict[str, Any]:
        """Shape returned by the administrative trigger."""
        out: dict[str, Any] = {"success": self.success, "logs": self.logs}
        if self.error is not None:
            out["error"] = self.error
        return out


def run_sync(
    source: TabularSource,
    store: RecordStore,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    aliases: AliasConfig | None = None,
    rejects: Any = None,
    on_success: Callable[[], None] | None = None,
) -> SyncResult:
    """Run one full sync and return its result.

    Never raises for stage failures. Errors from on_success are logged and
    leave the result successful.
    """
    aliases = aliases or AliasConfig()
    rejects = rejects or NullRejectWriter()
    sync_log = SyncLog()
    counters = SyncCounters()

    if not store.acquire_sync_lock():
        sync_log.warning("Sync", "another run holds the sync lock; not starting")
        return SyncResult(
            success=False,
            logs=sync_log.entries,
            error=SYNC_IN_PROGRESS,
            state=SyncState.FAILED,
            counters=counters,
        )

    state = SyncState.EVENTS
    try:
        events = run_event_stage(
            source, store, sync_log, counters,
            chunk_size=chunk_size,
            candidates=aliases.sheets["events"],
            aliases=aliases.aliases,
            rejects=rejects,
        )

        state = SyncState.ROSTERS
        rosters = run_roster_stage(
            source, store, events, sync_log, counters,
            chunk_size=chunk_size,
            candidates=aliases.sheets["rosters"],
            aliases=aliases.aliases,
            rejects=rejects,
        )

        state = SyncState.PARTICIPANTS
        run_participant_stage(
            source, store, rosters, sync_log, counters,
            chunk_size=chunk_size,
            candidates=aliases.sheets["participants"],
            aliases=aliases.aliases,
            rejects=rejects,
        )

        state = SyncState.DONE
    except SyncError as exc:
        sync_log.error("Sync", f"failed during {state.value}: {exc}")
        return SyncResult(False, sync_log.entries, str(exc), SyncState.FAILED, counters)
    except Exception as exc:
        log.exception("Sync exception during %s", state.value)
        sync_log.error("Sync", f"unexpected error during {state.value}: {type(exc).__name__}: {exc}")
        return SyncResult(False, sync_log.entries, str(exc), SyncState.FAILED, counters)
    finally:
        store.release_sync_lock()

    sync_log.info("Sync", "completed")
    if on_success is not None:
        # the data is committed; a failing hook does not turn the run into a failure
        try:
            on_success()
        except Exception as exc:
            log.exception("post-sync hook failed")
            sync_log.warning("Sync", f"post-sync hook failed: {type(exc).__name__}: {exc}")
    return SyncResult(True, sync_log.entries, None, state, counters)


def trigger_sync(
    config: SyncConfig | None = None,
    on_success: Callable[[], None] | None = None,
) -> dict[str, Any]:
    """Administrative action: build collaborators from config and run one sync.

    Returns {success, logs} plus error when the run failed.
    """
    config = config or SyncConfig.from_env()
    try:
        config.validate()
        aliases = config.load_aliases()
        source = config.build_source()
        store = config.build_store()
    except ConfigurationError as exc:
        return {"success": False, "error": str(exc), "logs": []}

    try:
        result = run_sync(
            source, store,
            chunk_size=config.chunk_size,
            aliases=aliases,
            on_success=on_success,
        )
    finally:
        store.close()
    return result.to_dict()
