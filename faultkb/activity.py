"""Audit trail of MCP tool calls.

Every tool call is appended to a JSONL file as one ``ToolCall``: the tool,
the account it ran for, how it ended (``ok`` or the FaultKBError kind),
whether it consumed a query from the account's quota, and how long it took.
``faultkb activity`` reads the trail back.
"""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from faultkb.errors import FaultKBError

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "faultkb-activity.jsonl"
RESULT_PREVIEW_LIMIT = 500
OK = "ok"

# Tools whose successful calls are settled against the caller's quota.
BILLABLE_TOOLS = frozenset({"analyze_fault"})


@dataclass
class ToolCall:
    tool_name: str
    arguments: dict
    account_id: int | None = None
    outcome: str = OK
    retryable: bool | None = None
    billable: bool = False
    duration_ms: int = 0
    result_preview: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self) -> None:
        if self.account_id is None:
            account_id = self.arguments.get("account_id")
            self.account_id = account_id if isinstance(account_id, int) else None

    def failed(self, error: Exception) -> None:
        if isinstance(error, FaultKBError):
            self.outcome = error.kind
            self.retryable = error.retryable
        elif isinstance(error, FileNotFoundError):
            self.outcome = "setup_required"
        else:
            self.outcome = "internal_error"

    def finish(self, result_text: str, duration_ms: int) -> None:
        self.result_preview = result_text[:RESULT_PREVIEW_LIMIT]
        self.duration_ms = duration_ms
        self.billable = self.tool_name in BILLABLE_TOOLS and self.outcome == OK


class ActivityLog:
    """Append-only JSONL log of tool calls."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_database(cls, db_path: Path) -> ActivityLog:
        """FAULTKB_LOG_PATH if set, otherwise a log file beside the database."""
        env_path = os.getenv("FAULTKB_LOG_PATH")
        if env_path:
            return cls(Path(env_path))
        return cls(Path(db_path).parent / LOG_FILE_NAME)

    def record(self, call: ToolCall) -> None:
        """Append one call. Write failures are logged, never raised."""
        try:
            with open(self.path, "a") as f:
                f.write(json.dumps(asdict(call), default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write activity log {self.path}: {e}")

    def entries(
        self,
        limit: int = 20,
        tool_name: str | None = None,
        account_id: int | None = None,
        errors_only: bool = False,
    ) -> list[dict]:
        """Matching entries, most recent first."""
        matched: list[dict] = []
        for entry in self._read_reversed():
            if len(matched) >= limit:
                break
            if tool_name and entry.get("tool_name") != tool_name:
                continue
            if account_id is not None and entry.get("account_id") != account_id:
                continue
            if errors_only and entry.get("outcome", OK) == OK:
                continue
            matched.append(entry)
        return matched

    def summary(self) -> dict:
        """Call and error counts per tool, plus billable calls per account."""
        calls: Counter[str] = Counter()
        errors: Counter[str] = Counter()
        billable: Counter[int] = Counter()
        for entry in self._read_reversed():
            tool = entry.get("tool_name", "?")
            calls[tool] += 1
            if entry.get("outcome", OK) != OK:
                errors[entry["outcome"]] += 1
            if entry.get("billable") and entry.get("account_id") is not None:
                billable[entry["account_id"]] += 1
        return {
            "calls_by_tool": dict(calls),
            "errors_by_kind": dict(errors),
            "billable_calls_by_account": dict(billable),
        }

    def _read_reversed(self) -> list[dict]:
        if not self.path.exists():
            return []
        entries = []
        for line in reversed(self.path.read_text().splitlines()):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed activity line: {line[:80]}")
        return entries
