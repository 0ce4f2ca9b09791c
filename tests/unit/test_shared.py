"""Unit tests for roster_sync.shared."""

import csv
import json
import logging

import pytest

from roster_sync.shared import (
    RejectWriter,
    StageError,
    SyncCounters,
    SyncLog,
    build_sync_report,
    chunked,
    collapse_by_key,
    write_run_report,
)


class TestChunked:
    def test_even_split(self):
        records = [{"n": i} for i in range(6)]
        chunks = list(chunked(records, 3))
        assert [idx for idx, _ in chunks] == [0, 1]
        assert [len(c) for _, c in chunks] == [3, 3]

    def test_remainder(self):
        records = [{"n": i} for i in range(1001)]
        assert [len(c) for _, c in chunked(records, 500)] == [500, 500, 1]

    def test_empty(self):
        assert list(chunked([], 500)) == []

    def test_non_positive_size(self):
        with pytest.raises(ValueError):
            list(chunked([{"n": 1}], 0))


class TestCollapseByKey:
    def test_last_payload_wins_in_first_seen_order(self):
        payloads, collapsed = collapse_by_key([
            ("a", {"v": 1}),
            ("b", {"v": 2}),
            ("a", {"v": 3}),
        ])
        assert payloads == [{"v": 3}, {"v": 2}]
        assert collapsed == 1

    def test_no_duplicates(self):
        payloads, collapsed = collapse_by_key([("a", {"v": 1}), ("b", {"v": 2})])
        assert len(payloads) == 2
        assert collapsed == 0


class TestSyncLog:
    def test_entries_are_stage_prefixed_and_ordered(self):
        sync_log = SyncLog()
        sync_log.info("Teams", "Reading sheet: 신청")
        sync_log.warning("Teams", "row 3 skipped")
        assert sync_log.entries == ["[Teams] Reading sheet: 신청", "[Teams] row 3 skipped"]
        assert len(sync_log) == 2

    def test_entries_returns_copy(self):
        sync_log = SyncLog()
        sync_log.info("Sync", "x")
        sync_log.entries.append("y")
        assert len(sync_log) == 1

    def test_mirrored_to_logger(self, caplog):
        with caplog.at_level(logging.INFO, logger="roster_sync.shared"):
            SyncLog().error("Players", "chunk 0 failed")
        assert "[Players] chunk 0 failed" in caplog.text


class TestStageError:
    def test_message_carries_stage(self):
        exc = StageError("Teams", "Team upsert failed at chunk 2")
        assert str(exc) == "Teams: Team upsert failed at chunk 2"
        assert exc.stage == "Teams"


class TestRejectWriter:
    def test_not_created_until_first_write(self, tmp_path):
        path = tmp_path / "rejects" / "out.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()

    def test_writes_context_and_row_json(self, tmp_path):
        path = tmp_path / "rejects" / "out.csv"
        writer = RejectWriter(path)
        writer.write({"팀명": "Blue", "_sheet": "신청", "_row_number": "4"}, "unresolved_tournament")
        writer.close()

        with path.open(encoding="utf-8", newline="") as fh:
            rows = list(csv.reader(fh))
        assert rows[0] == ["_sheet", "_row_number", "_reject_reason", "_row_json"]
        assert rows[1][:3] == ["신청", "4", "unresolved_tournament"]
        assert json.loads(rows[1][3]) == {"팀명": "Blue"}


class TestReports:
    def test_build_sync_report_includes_error(self):
        counters = SyncCounters(rosters_orphaned=2)
        text = build_sync_report(counters, False, "Teams: boom")
        assert "success          : False" in text
        assert "orphaned         : 2" in text
        assert text.endswith("error            : Teams: boom")

    def test_write_run_report(self, tmp_path):
        counters = SyncCounters(events_inserted=1)
        path = write_run_report(
            "run-1", "2025-03-01T00:00:00", "sync",
            {"csv_dir": "exports"},
            {"success": True, "logs": ["[Sync] completed"]},
            counters,
            report_dir=tmp_path,
        )
        data = json.loads(path.read_text())
        assert path.name == "run-1.json"
        assert data["success"] is True
        assert data["error"] is None
        assert data["csv_dir"] == "exports"
        assert data["counters"]["events_inserted"] == 1
