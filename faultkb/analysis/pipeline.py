"""Fault-diagnosis pipeline: request → quota → retrieval/context → synthesis → learning.

Also hosts the standalone web-search request, whose discoveries are written
back through the learning writer as an explicit step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from faultkb.analysis.context import ContextAssembler
from faultkb.analysis.synthesizer import Synthesizer
from faultkb.errors import InvalidInput
from faultkb.knowledge.models import AnalysisRequest, AnalysisResult
from faultkb.knowledge.retriever import KnowledgeRetriever
from faultkb.knowledge.writer import LearningWriter
from faultkb.quota import QuotaGate
from faultkb.search.orchestrator import SearchOutcome
from faultkb.storage.repository import Repository

logger = logging.getLogger(__name__)

MIN_SEARCH_QUERY_CHARS = 3

# (query, timeout) -> outcome
SearchFn = Callable[[str, float | None], SearchOutcome]


@dataclass
class AnalysisOutcome:
    result: AnalysisResult
    fault_id: int | None
    queries_remaining: int | None
    omitted_document_ids: list[int] = field(default_factory=list)
    search: SearchOutcome | None = None

    def to_dict(self) -> dict:
        data = {
            "success": True,
            "fault_id": self.fault_id,
            "saved": self.fault_id is not None,
            "analysis": self.result.to_dict(),
            "queries_remaining": self.queries_remaining,
            "omitted_document_ids": self.omitted_document_ids,
        }
        if self.search is not None:
            data["search"] = {
                "partial": self.search.partial,
                "sources_attempted": self.search.sources_attempted,
                "results": len(self.search.results),
            }
        return data


@dataclass
class SearchReport:
    outcome: SearchOutcome
    learned_fault_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.outcome.to_dict()
        data["learned_fault_ids"] = self.learned_fault_ids
        return data


class DiagnosisPipeline:
    """Runs analysis and search requests for one caller at a time."""

    def __init__(
        self,
        repo: Repository,
        synthesizer: Synthesizer,
        search: SearchFn | None = None,
    ) -> None:
        self._repo = repo
        self._synthesizer = synthesizer
        self._search = search
        self._gate = QuotaGate(repo)
        self._retriever = KnowledgeRetriever(repo)
        self._assembler = ContextAssembler(repo)
        self._writer = LearningWriter(repo, self._gate)

    def analyze(
        self,
        account_id: int,
        request: AnalysisRequest,
        search_timeout: float | None = None,
    ) -> AnalysisOutcome:
        """Diagnose a fault. Either returns a complete outcome or raises a FaultKBError."""
        validate_request(request)
        caller = self._gate.resolve_caller(account_id)
        # Before any external call, so a rejected request costs nothing.
        self._gate.admit(caller)

        matches = self._retriever.find_similar(request.fault_description)

        search_outcome: SearchOutcome | None = None
        if request.search_web:
            if self._search is None:
                raise InvalidInput("Web search was requested but is not configured")
            search_outcome = self._search(request.search_query(), search_timeout)

        context = self._assembler.assemble(
            request.document_ids,
            caller.id,
            knowledge=matches,
            web_snippets=search_outcome.results if search_outcome else None,
        )

        result = self._synthesizer.synthesize(request, context)
        result.related_faults = self._retriever.related_faults(request.fault_description, matches)

        fault_id = self._writer.record_analysis(caller, request, result, search_outcome)
        return AnalysisOutcome(
            result=result,
            fault_id=fault_id,
            queries_remaining=self._gate.remaining(caller),
            omitted_document_ids=context.omitted_document_ids,
            search=search_outcome,
        )

    def search(
        self,
        account_id: int,
        query: str,
        device_type: str = "",
        learn: bool = True,
        timeout: float | None = None,
    ) -> SearchReport:
        """Search the configured web sources and optionally learn from the results."""
        if self._search is None:
            raise InvalidInput("Web search is not configured")
        if len(query.strip()) < MIN_SEARCH_QUERY_CHARS:
            raise InvalidInput(f"Search query must be at least {MIN_SEARCH_QUERY_CHARS} characters")
        caller = self._gate.resolve_caller(account_id)

        full_query = f"{device_type} {query}".strip()
        outcome = self._search(full_query, timeout)
        learned = self._writer.record_search(caller, outcome, learn=learn)
        return SearchReport(outcome=outcome, learned_fault_ids=learned)


def validate_request(request: AnalysisRequest) -> None:
    """Pre-flight checks; raises InvalidInput."""
    missing = [
        name
        for name in ("device_type", "manufacturer", "device_model")
        if not getattr(request, name).strip()
    ]
    if missing:
        raise InvalidInput(f"Missing device fields: {', '.join(missing)}")
    if not request.fault_description.strip():
        raise InvalidInput("Fault description is empty")
    if any(not isinstance(d, int) for d in request.document_ids):
        raise InvalidInput("Document ids must be integers")
