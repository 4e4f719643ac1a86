"""Quota admission control.

A request is admitted only while the caller has queries left, and the
balance is settled (decremented by one) only when the request succeeds.
Settlement is a compare-and-decrement in SQL, so concurrent requests from
the same caller can never take the balance below zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from faultkb.errors import InvalidInput, QuotaExceeded
from faultkb.knowledge.models import Caller
from faultkb.storage.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    allowed: bool
    remaining: int | None  # None for unmetered callers


class QuotaGate:
    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def resolve_caller(self, account_id: int) -> Caller:
        """Look the account up once; the role decides whether it is metered."""
        account = self._repo.get_account(account_id)
        if account is None:
            raise InvalidInput(f"Unknown account {account_id}")
        return Caller(id=account["id"], role=account["role"])

    def admit(self, caller: Caller) -> Admission:
        """Raise QuotaExceeded unless the caller may start a request."""
        if caller.unlimited:
            return Admission(allowed=True, remaining=None)

        account = self._repo.get_account(caller.id)
        remaining = account["queries_remaining"] if account else 0
        if remaining <= 0:
            logger.info(f"Rejected request from account {caller.id}: quota exhausted")
            raise QuotaExceeded(caller.id)
        return Admission(allowed=True, remaining=remaining)

    def settle(self, caller: Caller) -> None:
        """Charge one query. Call inside the request's write transaction."""
        if caller.unlimited:
            self._repo.record_unmetered_use(caller.id)
            return
        if not self._repo.decrement_quota(caller.id):
            raise QuotaExceeded(caller.id)

    def remaining(self, caller: Caller) -> int | None:
        if caller.unlimited:
            return None
        account = self._repo.get_account(caller.id)
        return account["queries_remaining"] if account else 0
