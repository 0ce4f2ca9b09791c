"""Unit tests for roster_sync.orchestrator: stage ordering, failure policy and the run lock."""

import pytest

from roster_sync.config import SyncConfig
from roster_sync.headers import AliasConfig, SHEET_CANDIDATES
from roster_sync.orchestrator import (
    SYNC_IN_PROGRESS,
    SyncResult,
    SyncState,
    run_sync,
    trigger_sync,
)
from roster_sync.shared import SyncCounters
from roster_sync.source import StaticSource


@pytest.fixture
def registration_source(make_source):
    """One event, two teams (one orphaned), three players (one unmapped)."""
    return make_source(
        events=[{"tourId": "T1", "name": "Spring Cup", "divs": '["U12"]'}],
        rosters=[
            {"tourId": "T1", "teamId": "A1", "teamNameKo": "Blue Whales",
             "managerName": "Kim", "managerPhone": "010-1111-2222"},
            {"tourId": "T9", "teamId": "A9", "teamNameKo": "Ghosts"},
        ],
        participants=[
            {"teamId": "A1", "이름": "Lee", "backNumber": "7", "isElite": "선출"},
            {"teamId": "A1", "이름": "Park", "backNumber": "9"},
            {"teamId": "A9", "이름": "Choi"},
        ],
    )


def _snapshot(store):
    return {table: sorted(store.tables[table].items()) for table in store.tables}


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------

class TestRunSync:
    def test_full_scenario(self, memory_store, registration_source):
        result = run_sync(registration_source, memory_store)

        assert result.success is True
        assert result.state is SyncState.DONE
        assert result.error is None

        [event] = memory_store.rows("tournaments")
        [team] = memory_store.rows("teams")
        players = memory_store.rows("players")
        assert event["legacy_id"] == "T1"
        assert team["tournament_id"] == event["id"]
        assert team["name_ko"] == "Blue Whales"
        assert sorted(p["name"] for p in players) == ["Lee", "Park"]
        assert all(p["team_id"] == team["id"] for p in players)

        assert result.counters.rosters_orphaned == 1
        assert result.counters.participants_unresolved_roster == 1
        assert result.logs[-1] == "[Sync] completed"
        assert any(e.startswith("[Tournaments]") for e in result.logs)
        assert any(e.startswith("[Teams]") for e in result.logs)
        assert any(e.startswith("[Players]") for e in result.logs)
        assert memory_store.locked is False

    def test_second_run_changes_nothing(self, memory_store, registration_source):
        run_sync(registration_source, memory_store)
        before = _snapshot(memory_store)

        result = run_sync(registration_source, memory_store)

        assert result.success is True
        assert _snapshot(memory_store) == before
        assert result.counters.events_inserted == 0
        assert result.counters.rosters_inserted == 0
        assert result.counters.participants_inserted == 0
        assert result.counters.events_updated == 1
        assert result.counters.rosters_updated == 1
        assert result.counters.participants_updated == 2

    def test_duplicate_team_rows_yield_one_record_across_runs(self, memory_store, make_source):
        source = make_source(
            events=[{"tourId": "T1", "name": "Spring Cup"}],
            rosters=[
                {"tourId": "T1", "teamNameKo": "Blue", "managerPhone": "010-1111-2222"},
                {"tourId": "T1", "teamNameKo": "Blue", "managerPhone": "010-1111-2222"},
            ],
            participants=[],
        )
        run_sync(source, memory_store)
        run_sync(source, memory_store)
        assert len(memory_store.rows("teams")) == 1

    def test_event_added_later_keeps_both_events_and_teams(self, memory_store, make_source):
        run_sync(make_source(
            events=[{"tourId": "T1"}],
            rosters=[{"tourId": "T1", "teamId": "A1", "teamNameKo": "Blue"}],
            participants=[],
        ), memory_store)
        source = make_source(
            events=[{"tourId": "T1"}, {"tourId": "T2"}],
            rosters=[
                {"tourId": "T1", "teamId": "A1", "teamNameKo": "Blue"},
                {"tourId": "T2", "teamId": "B1", "teamNameKo": "Red"},
            ],
            participants=[],
        )

        second = run_sync(source, memory_store)
        before = _snapshot(memory_store)
        third = run_sync(source, memory_store)

        events = {r["legacy_id"]: r["id"] for r in memory_store.rows("tournaments")}
        teams = {r["name_ko"]: r["tournament_id"] for r in memory_store.rows("teams")}
        assert set(events) == {"T1", "T2"}
        assert teams == {"Blue": events["T1"], "Red": events["T2"]}
        assert second.counters.rosters_orphaned == 0
        assert third.counters.rosters_orphaned == 0
        assert _snapshot(memory_store) == before

    def test_stages_run_in_dependency_order(self, memory_store, registration_source):
        run_sync(registration_source, memory_store)
        tables = [t for t, _ in memory_store.upsert_calls]
        assert tables == ["tournaments", "teams", "players"]

    def test_on_success_hook(self, memory_store, registration_source):
        calls = []
        run_sync(registration_source, memory_store, on_success=lambda: calls.append("revalidate"))
        assert calls == ["revalidate"]

    def test_failing_hook_does_not_fail_committed_run(self, memory_store, registration_source):
        def hook():
            raise RuntimeError("cache unavailable")

        result = run_sync(registration_source, memory_store, on_success=hook)

        assert result.success is True
        assert result.state is SyncState.DONE
        assert result.logs[-1] == "[Sync] post-sync hook failed: RuntimeError: cache unavailable"
        assert len(memory_store.rows("tournaments")) == 1
        assert memory_store.locked is False

    def test_custom_sheet_aliases(self, memory_store, make_source):
        aliases = AliasConfig()
        aliases.sheets["events"] = ("2025 대회",) + SHEET_CANDIDATES["events"]
        aliases.aliases["name"] = ("행사명",) + aliases.aliases["name"]
        source = StaticSource({"2025 대회": [["tourId", "행사명"], ["T1", "봄 대회"]]})

        result = run_sync(source, memory_store, aliases=aliases)

        # no roster sheet: fatal after the event stage committed
        assert result.success is False
        assert memory_store.rows("tournaments")[0]["name"] == "봄 대회"


# ---------------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------------

class TestFailurePolicy:
    def test_missing_event_sheet_fails_before_writes(self, memory_store, make_source):
        calls = []
        source = make_source(rosters=[{"tourId": "T1", "teamNameKo": "Blue"}], participants=[])
        result = run_sync(source, memory_store, on_success=lambda: calls.append(1))

        assert result.success is False
        assert result.state is SyncState.FAILED
        assert result.error.startswith("Tournaments:")
        assert memory_store.upsert_calls == []
        assert calls == []
        assert memory_store.locked is False

    def test_roster_chunk_failure_stops_before_participants(self, memory_store, registration_source):
        memory_store.fail_when.append(lambda table, recs: table == "teams")
        result = run_sync(registration_source, memory_store)

        assert result.success is False
        assert "Team upsert failed at chunk 0" in result.error
        assert len(memory_store.rows("tournaments")) == 1
        assert memory_store.rows("players") == []
        assert any("failed during rosters" in e for e in result.logs)

    def test_participant_chunk_failure_still_succeeds(self, memory_store, registration_source):
        memory_store.fail_when.append(
            lambda table, recs: table == "players" and any(r["name"] == "Park" for r in recs)
        )
        result = run_sync(registration_source, memory_store, chunk_size=1)

        assert result.success is True
        assert [p["name"] for p in memory_store.rows("players")] == ["Lee"]
        assert result.counters.participants_chunks_failed == 1

    def test_missing_participant_sheet_still_succeeds(self, memory_store, make_source):
        source = make_source(
            events=[{"tourId": "T1", "name": "Spring Cup"}],
            rosters=[{"tourId": "T1", "teamNameKo": "Blue"}],
        )
        result = run_sync(source, memory_store)
        assert result.success is True
        assert len(memory_store.rows("teams")) == 1

    def test_unexpected_exception_is_reported(self, memory_store, registration_source):
        def broken_select(table, columns):
            raise RuntimeError("connection reset")

        memory_store.select = broken_select
        result = run_sync(registration_source, memory_store)

        assert result.success is False
        assert result.error == "connection reset"
        assert any("RuntimeError" in e for e in result.logs)
        assert memory_store.locked is False


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------

class TestSyncLock:
    def test_second_run_refused_while_lock_held(self, memory_store, registration_source):
        memory_store.locked = True
        result = run_sync(registration_source, memory_store)

        assert result.success is False
        assert result.error == SYNC_IN_PROGRESS
        assert memory_store.upsert_calls == []
        assert memory_store.select_calls == []
        # the holder's lock is left alone
        assert memory_store.locked is True

    def test_lock_released_between_runs(self, memory_store, registration_source):
        run_sync(registration_source, memory_store)
        run_sync(registration_source, memory_store)
        assert memory_store.lock_acquisitions == 2


# ---------------------------------------------------------------------------
# Result shape and trigger
# ---------------------------------------------------------------------------

class TestSyncResult:
    def test_to_dict_success_has_no_error_key(self):
        result = SyncResult(True, ["[Sync] completed"])
        assert result.to_dict() == {"success": True, "logs": ["[Sync] completed"]}

    def test_to_dict_failure(self):
        result = SyncResult(False, [], "Teams: boom", SyncState.FAILED, SyncCounters())
        assert result.to_dict() == {"success": False, "logs": [], "error": "Teams: boom"}


class TestTriggerSync:
    def test_configuration_error_is_returned(self):
        out = trigger_sync(SyncConfig(spreadsheet_id="doc1"))
        assert out["success"] is False
        assert "DSN" in out["error"]
        assert out["logs"] == []

    def test_unparseable_alias_file_is_returned(self, tmp_path):
        alias_file = tmp_path / "aliases.yml"
        alias_file.write_text("aliases: [unclosed\n", encoding="utf-8")

        out = trigger_sync(SyncConfig(db_dsn="dsn", csv_dir=str(tmp_path), alias_file=str(alias_file)))

        assert out["success"] is False
        assert "invalid alias file" in out["error"]
        assert out["logs"] == []

    def test_malformed_dsn_is_returned(self, tmp_path):
        out = trigger_sync(SyncConfig(db_dsn="host=localhost bogus_option=1", csv_dir=str(tmp_path)))

        assert out["success"] is False
        assert "cannot connect to database" in out["error"]
        assert out["logs"] == []

    def test_runs_and_closes_store(self, monkeypatch, memory_store, registration_source):
        monkeypatch.setattr(SyncConfig, "build_store", lambda self: memory_store)
        monkeypatch.setattr(
            SyncConfig, "build_source",
            lambda self, env=None, write_access=False: registration_source,
        )
        hook_calls = []

        out = trigger_sync(
            SyncConfig(db_dsn="postgresql://unused", csv_dir="unused"),
            on_success=lambda: hook_calls.append(True),
        )

        assert out["success"] is True
        assert "error" not in out
        assert out["logs"][-1] == "[Sync] completed"
        assert hook_calls == [True]
        assert memory_store.closed is True
