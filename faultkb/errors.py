"""Error taxonomy for the diagnosis pipeline.

Every error carries a ``kind`` so callers can tell them apart without
isinstance chains, and a ``retryable`` flag: network and service failures
may be retried by the caller, quota and validation failures may not.
"""

from __future__ import annotations

from typing import Any


class FaultKBError(Exception):
    kind = "error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, "retryable": self.retryable}


class InvalidInput(FaultKBError):
    kind = "invalid_input"


class QuotaExceeded(FaultKBError):
    kind = "quota_exceeded"

    def __init__(self, account_id: int, message: str = "") -> None:
        super().__init__(
            message or "Query quota exceeded. Please upgrade your subscription."
        )
        self.account_id = account_id


class SourceUnavailable(FaultKBError):
    """A single search source could not be fetched or parsed.

    Never escapes the search orchestrator; it is recorded as a skipped source.
    """

    kind = "source_unavailable"
    retryable = True

    def __init__(self, source_name: str, url: str, reason: str) -> None:
        super().__init__(f"{source_name} ({url}): {reason}")
        self.source_name = source_name
        self.url = url
        self.reason = reason


class PolicyCheckFailed(FaultKBError):
    """robots.txt could not be checked. Logged and treated as allowed."""

    kind = "policy_check_failed"
    retryable = True


class SynthesisFailed(FaultKBError):
    kind = "synthesis_failed"

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class PersistenceFailed(FaultKBError):
    """The analysis succeeded but could not be recorded.

    ``result`` holds the unsaved analysis so the caller can still show it,
    clearly marked as not saved.
    """

    kind = "persistence_failed"
    retryable = True

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result
