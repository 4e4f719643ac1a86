"""Tests for faultkb.activity: the MCP tool-call audit trail."""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

from faultkb.activity import ActivityLog, ToolCall
from faultkb.errors import InvalidInput, QuotaExceeded, SourceUnavailable


def _call(name: str, arguments: dict, error: Exception | None = None) -> ToolCall:
    call = ToolCall(name, arguments)
    if error is not None:
        call.failed(error)
    call.finish('{"ok": true}', 12)
    return call


class TestToolCall:
    def test_successful_analysis_is_billable(self):
        call = _call("analyze_fault", {"account_id": 7, "fault_description": "alarm"})
        assert call.account_id == 7
        assert call.outcome == "ok"
        assert call.billable

    def test_failed_analysis_is_not_billable(self):
        call = _call("analyze_fault", {"account_id": 7}, QuotaExceeded(7))
        assert call.outcome == "quota_exceeded"
        assert call.retryable is False
        assert not call.billable

    def test_search_is_never_billable(self):
        assert not _call("search_sources", {"account_id": 7, "query": "pump"}).billable

    def test_retryable_error(self):
        call = _call("search_sources", {}, SourceUnavailable("Forum", "https://f.example", "HTTP 503"))
        assert call.outcome == "source_unavailable"
        assert call.retryable is True

    def test_other_failures(self):
        assert _call("get_fault", {}, FileNotFoundError("no db")).outcome == "setup_required"
        assert _call("get_fault", {}, KeyError("fault_id")).outcome == "internal_error"

    def test_non_integer_account_ignored(self):
        assert ToolCall("analyze_fault", {"account_id": "7"}).account_id is None

    def test_result_preview_truncated(self):
        call = ToolCall("get_fault", {})
        call.finish("x" * 1000, 1)
        assert len(call.result_preview) == 500


class TestActivityLog:
    def test_record_and_read_back(self, tmp_path: Path):
        log = ActivityLog(tmp_path / "activity.jsonl")
        log.record(_call("analyze_fault", {"account_id": 1}))
        log.record(_call("analyze_fault", {"account_id": 2}, InvalidInput("empty description")))

        entries = log.entries()
        assert [e["account_id"] for e in entries] == [2, 1]
        assert entries[0]["outcome"] == "invalid_input"
        assert entries[1]["billable"] is True

    def test_filters(self, tmp_path: Path):
        log = ActivityLog(tmp_path / "activity.jsonl")
        log.record(_call("analyze_fault", {"account_id": 1}))
        log.record(_call("get_fault", {"fault_id": 3}))
        log.record(_call("analyze_fault", {"account_id": 2}, QuotaExceeded(2)))

        assert [e["tool_name"] for e in log.entries(tool_name="get_fault")] == ["get_fault"]
        assert [e["account_id"] for e in log.entries(account_id=1)] == [1]
        assert [e["outcome"] for e in log.entries(errors_only=True)] == ["quota_exceeded"]
        assert len(log.entries(limit=2)) == 2

    def test_summary(self, tmp_path: Path):
        log = ActivityLog(tmp_path / "activity.jsonl")
        log.record(_call("analyze_fault", {"account_id": 1}))
        log.record(_call("analyze_fault", {"account_id": 1}))
        log.record(_call("analyze_fault", {"account_id": 2}, QuotaExceeded(2)))
        log.record(_call("search_sources", {"account_id": 2}))

        assert log.summary() == {
            "calls_by_tool": {"analyze_fault": 3, "search_sources": 1},
            "errors_by_kind": {"quota_exceeded": 1},
            "billable_calls_by_account": {1: 2},
        }

    def test_skips_malformed_lines(self, tmp_path: Path):
        path = tmp_path / "activity.jsonl"
        path.write_text(json.dumps({"tool_name": "get_fault"}) + "\nnot json\n\n")
        assert [e["tool_name"] for e in ActivityLog(path).entries()] == ["get_fault"]

    def test_missing_file(self, tmp_path: Path):
        log = ActivityLog(tmp_path / "none.jsonl")
        assert log.entries() == []
        assert log.summary()["calls_by_tool"] == {}

    def test_unwritable_path_does_not_raise(self, tmp_path: Path):
        missing_dir = tmp_path / "nope" / "activity.jsonl"
        ActivityLog(missing_dir).record(_call("get_fault", {}))
        assert not missing_dir.exists()


class TestLogLocation:
    def test_defaults_next_to_database(self, tmp_path: Path):
        cleaned = {k: v for k, v in os.environ.items() if k != "FAULTKB_LOG_PATH"}
        with patch.dict(os.environ, cleaned, clear=True):
            log = ActivityLog.for_database(tmp_path / "kb.db")
        assert log.path == tmp_path / "faultkb-activity.jsonl"

    def test_env_override(self, tmp_path: Path):
        with patch.dict(os.environ, {"FAULTKB_LOG_PATH": str(tmp_path / "audit.jsonl")}):
            log = ActivityLog.for_database(tmp_path / "kb.db")
        assert log.path == tmp_path / "audit.jsonl"
