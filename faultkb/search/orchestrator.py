"""Search orchestrator: query → all active sources → ranked snippets.

Fans out the source fetcher across every active search source, extracts
maintenance info from each page, scores it against the query and ranks the
batch. A failing source is recorded and skipped; it never fails the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from faultkb.config import MAX_SEARCH_CONCURRENCY, MIN_SERIAL_DELAY, Config
from faultkb.errors import SourceUnavailable
from faultkb.knowledge.models import ScrapedContent, SearchSource
from faultkb.search.extractor import MaintenanceInfo, extract_maintenance_info
from faultkb.search.fetcher import SourceFetcher
from faultkb.search.scoring import Scorer, score_relevance
from faultkb.storage.repository import Repository

logger = logging.getLogger(__name__)

MAX_RESULTS = 20


@dataclass
class SkippedSource:
    name: str
    url: str
    reason: str


@dataclass
class SearchOutcome:
    query: str
    results: list[ScrapedContent] = field(default_factory=list)
    sources_attempted: list[str] = field(default_factory=list)
    sources_skipped: list[SkippedSource] = field(default_factory=list)
    extractions: dict[str, MaintenanceInfo] = field(default_factory=dict)  # url -> info
    partial: bool = False  # True when a timeout cut the batch short

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "partial": self.partial,
            "sources_attempted": self.sources_attempted,
            "sources_skipped": [
                {"name": s.name, "url": s.url, "reason": s.reason}
                for s in self.sources_skipped
            ],
            "results": [
                {
                    "title": r.title,
                    "url": r.url,
                    "source": r.source_name,
                    "relevance_score": round(r.relevance_score, 3),
                    "maintenance_info": _info_dict(self.extractions.get(r.url)),
                }
                for r in self.results
            ],
        }


@dataclass
class _Batch:
    """Progress of one search run, keyed by source id."""

    outcome: SearchOutcome
    started: set[int] = field(default_factory=set)
    finished: set[int] = field(default_factory=set)


class SearchOrchestrator:
    """Runs one query against every active search source."""

    def __init__(
        self,
        repo: Repository,
        fetcher: SourceFetcher,
        scorer: Scorer = score_relevance,
        concurrency: int = 5,
        delay: float = 1.0,
        max_results: int = MAX_RESULTS,
    ) -> None:
        self._repo = repo
        self._fetcher = fetcher
        self._scorer = scorer
        self._concurrency = min(max(1, concurrency), MAX_SEARCH_CONCURRENCY)
        self._delay = max(delay, MIN_SERIAL_DELAY) if self._concurrency == 1 else delay
        if (self._concurrency, self._delay) != (concurrency, delay):
            logger.warning(
                f"Search politeness limits applied: concurrency {self._concurrency}, "
                f"delay {self._delay}s"
            )
        self._max_results = max_results

    async def search_all(self, query: str, timeout: float | None = None) -> SearchOutcome:
        """Search all active sources.

        With a timeout, fetches still in flight are cancelled and whatever
        already completed is returned with ``partial=True``.
        """
        sources = self._repo.get_search_sources(active_only=True)
        outcome = SearchOutcome(query=query)
        if not sources:
            logger.info("No active search sources configured")
            return outcome

        batch = _Batch(outcome)
        if self._concurrency > 1:
            run = self._run_concurrent(sources, query, batch)
        else:
            run = self._run_serial(sources, query, batch)

        try:
            await asyncio.wait_for(run, timeout)
        except asyncio.TimeoutError:
            outcome.partial = True
            for source in sources:
                if source.id in batch.finished:
                    continue
                if source.id in batch.started:
                    reason = "cancelled: search timed out"
                else:
                    reason = "not attempted: search timed out"
                outcome.sources_skipped.append(SkippedSource(source.name, source.url, reason))
            logger.warning(
                f"Search timed out after {timeout}s; returning "
                f"{len(batch.finished)} of {len(sources)} sources finished"
            )

        self._repo.mark_sources_scraped(
            [s.id for s in sources if s.id in batch.started], datetime.now()
        )
        outcome.results = self._rank(outcome.results)
        logger.info(
            f"Search '{query}': {len(outcome.results)} results from "
            f"{len(outcome.sources_attempted)} sources ({len(outcome.sources_skipped)} skipped)"
        )
        return outcome

    async def _run_concurrent(
        self,
        sources: list[SearchSource],
        query: str,
        batch: _Batch,
    ) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(source: SearchSource) -> None:
            async with semaphore:
                await self._process(source, query, batch)

        await asyncio.gather(*(bounded(s) for s in sources))

    async def _run_serial(
        self,
        sources: list[SearchSource],
        query: str,
        batch: _Batch,
    ) -> None:
        for i, source in enumerate(sources):
            if i > 0:
                await asyncio.sleep(self._delay)
            await self._process(source, query, batch)

    async def _process(
        self,
        source: SearchSource,
        query: str,
        batch: _Batch,
    ) -> None:
        """Fetch, extract and score one source, recording the outcome."""
        outcome = batch.outcome
        batch.started.add(source.id)
        outcome.sources_attempted.append(source.name)
        try:
            page = await self._fetcher.fetch(source, query)
        except SourceUnavailable as e:
            logger.warning(f"Skipping source {e}")
            outcome.sources_skipped.append(SkippedSource(source.name, e.url, e.reason))
            batch.finished.add(source.id)
            return
        except Exception as e:
            logger.warning(f"Skipping source {source.name}: unexpected error: {e}")
            outcome.sources_skipped.append(
                SkippedSource(source.name, source.url, f"unexpected error: {e}")
            )
            batch.finished.add(source.id)
            return

        batch.finished.add(source.id)
        outcome.extractions[page.url] = extract_maintenance_info(page.content)
        outcome.results.append(
            ScrapedContent(
                title=page.title,
                url=page.url,
                content=page.content,
                relevance_score=self._scorer(page.content, query),
                source_name=source.name,
            )
        )

    def _rank(self, results: list[ScrapedContent]) -> list[ScrapedContent]:
        """Dedupe by URL (best score wins), sort by score, cap."""
        best: dict[str, ScrapedContent] = {}
        for r in results:
            if r.url not in best or r.relevance_score > best[r.url].relevance_score:
                best[r.url] = r
        ranked = sorted(best.values(), key=lambda r: r.relevance_score, reverse=True)
        return ranked[: self._max_results]


async def search_sources(
    repo: Repository,
    config: Config,
    query: str,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SearchOutcome:
    """Build a fetcher from config and run one search."""
    async with httpx.AsyncClient(transport=transport) as client:
        fetcher = SourceFetcher(
            client,
            timeout=config.fetch_timeout,
            max_retries=config.fetch_retries,
            credentials=config.credentials,
        )
        orchestrator = SearchOrchestrator(
            repo,
            fetcher,
            concurrency=config.search_concurrency,
            delay=config.search_delay,
        )
        return await orchestrator.search_all(query, timeout=timeout)


def run_search(
    repo: Repository,
    config: Config,
    query: str,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SearchOutcome:
    """Synchronous entry point for callers outside an event loop."""
    return asyncio.run(search_sources(repo, config, query, timeout, transport))


def _info_dict(info: MaintenanceInfo | None) -> dict:
    if info is None:
        return {"parts": [], "procedures": [], "warnings": []}
    return {"parts": info.parts, "procedures": info.procedures, "warnings": info.warnings}
