"""Learning writer: feeds new solutions back into the knowledge base.

Two write paths, each one explicit transaction:
- record_analysis: after a synthesis. Settles quota, stores the diagnosis as a
  new fault (optionally), stores web-discovered faults, appends history.
- record_search: after a standalone web search. Stores web-discovered faults
  for pages with at least one repair procedure and appends history.
"""

from __future__ import annotations

import logging
import sqlite3

from faultkb.errors import PersistenceFailed
from faultkb.knowledge.models import (
    AnalysisRequest,
    AnalysisResult,
    Caller,
    FaultRecord,
    QueryHistoryEntry,
)
from faultkb.quota import QuotaGate
from faultkb.search.extractor import guess_device_identity
from faultkb.search.orchestrator import SearchOutcome
from faultkb.storage.repository import Repository

logger = logging.getLogger(__name__)

WEB_ROOT_CAUSE = "Information gathered from technical forums"
ANALYSIS_COST = 1
SEARCH_COST = 0


class LearningWriter:
    def __init__(self, repo: Repository, gate: QuotaGate) -> None:
        self._repo = repo
        self._gate = gate

    def record_analysis(
        self,
        caller: Caller,
        request: AnalysisRequest,
        result: AnalysisResult,
        search: SearchOutcome | None = None,
    ) -> int | None:
        """Persist a completed analysis. Returns the new fault id, or None if not saved.

        Raises QuotaExceeded if a concurrent request spent the last query
        first; nothing is written in that case.
        """
        related_ids = [f.id for f in result.related_faults]
        try:
            with self._repo.transaction():
                self._gate.settle(caller)

                fault_id: int | None = None
                discovered_ids: list[int] = []
                if request.save_to_knowledge_base:
                    fault_id = self._repo.save_fault(
                        FaultRecord(
                            device_type=request.device_type,
                            manufacturer=request.manufacturer,
                            device_model=request.device_model,
                            fault_description=request.fault_description,
                            symptoms=request.symptoms,
                            error_codes=request.error_codes,
                            root_cause=result.root_cause,
                            solution=result.solution,
                            parts_required=result.parts_required,
                            estimated_repair_time=result.estimated_repair_time,
                            difficulty=result.difficulty,
                            source_document_id=request.document_ids[0] if request.document_ids else None,
                            linked_fault_ids=related_ids,
                            provenance="synthesized",
                            owner_id=caller.id,
                        )
                    )
                    if search is not None:
                        discovered_ids = self._save_discovered(search, caller.id, request)
                        self._repo.link_faults(fault_id, discovered_ids)

                resulting = ([fault_id] if fault_id is not None else []) + discovered_ids
                self._repo.save_query_history(
                    QueryHistoryEntry(
                        owner_id=caller.id,
                        query=request.fault_description,
                        device_type=request.device_type,
                        manufacturer=request.manufacturer,
                        device_model=request.device_model,
                        search_performed=search is not None,
                        related_fault_ids=_unique_ids(resulting + related_ids),
                        sources_used=_sources_used(search),
                        query_cost=ANALYSIS_COST,
                    )
                )
        except sqlite3.Error as e:
            logger.error(f"Could not record analysis for account {caller.id}: {e}")
            raise PersistenceFailed(
                "Analysis completed but was not saved to the knowledge base", result=result
            ) from e

        if fault_id is not None:
            logger.info(f"Saved fault {fault_id} (linked to {related_ids})")
        return fault_id

    def record_search(self, caller: Caller, outcome: SearchOutcome, learn: bool = True) -> list[int]:
        """Persist what a standalone search discovered. Returns new fault ids."""
        try:
            with self._repo.transaction():
                discovered_ids = self._save_discovered(outcome, caller.id) if learn else []
                self._repo.save_query_history(
                    QueryHistoryEntry(
                        owner_id=caller.id,
                        query=outcome.query,
                        search_performed=True,
                        related_fault_ids=discovered_ids,
                        sources_used=_sources_used(outcome),
                        query_cost=SEARCH_COST,
                    )
                )
        except sqlite3.Error as e:
            logger.error(f"Could not record search for account {caller.id}: {e}")
            raise PersistenceFailed("Search results were not saved to the knowledge base") from e

        if discovered_ids:
            logger.info(f"Learned {len(discovered_ids)} fault(s) from web search '{outcome.query}'")
        return discovered_ids

    def _save_discovered(
        self,
        outcome: SearchOutcome,
        owner_id: int,
        request: AnalysisRequest | None = None,
    ) -> list[int]:
        """Store one web_discovered fault per result page that has a procedure."""
        description = f"Web Found: {outcome.query}"
        saved: list[int] = []
        for scraped in outcome.results:
            info = outcome.extractions.get(scraped.url)
            if info is None or not info.procedures:
                continue
            if self._repo.fault_exists(description, scraped.url):
                continue

            if request is not None:
                device_type = request.device_type
                manufacturer = request.manufacturer
                device_model = request.device_model
            else:
                identity = guess_device_identity(scraped.content)
                device_type = identity.device_type
                manufacturer = identity.manufacturer
                device_model = identity.model if identity.model != "Unknown" else scraped.title[:50]

            saved.append(
                self._repo.save_fault(
                    FaultRecord(
                        device_type=device_type,
                        manufacturer=manufacturer,
                        device_model=device_model,
                        fault_description=description,
                        root_cause=WEB_ROOT_CAUSE,
                        solution="\n".join(info.procedures),
                        parts_required=info.parts,
                        source_website=scraped.url,
                        provenance="web_discovered",
                        owner_id=owner_id,
                    )
                )
            )
        return saved


def _sources_used(outcome: SearchOutcome | None) -> list[str]:
    if outcome is None:
        return []
    return list(dict.fromkeys(r.source_name for r in outcome.results))


def _unique_ids(ids: list[int]) -> list[int]:
    return list(dict.fromkeys(ids))
