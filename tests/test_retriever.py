"""Tests for faultkb.knowledge.retriever."""

from __future__ import annotations

from faultkb.knowledge.models import FaultRecord
from faultkb.knowledge.retriever import KnowledgeRetriever
from faultkb.storage.repository import Repository


class TestFindSimilar:
    def test_matches_first_tokens_by_popularity(self, populated_repo: Repository):
        retriever = KnowledgeRetriever(populated_repo)
        matches = retriever.find_similar("pump leaking fluid from valve")
        assert [m["description"] for m in matches] == [
            "pump alarm keeps sounding",
            "fluid warmer not heating",
            "pump leaking fluid from valve",
        ]
        assert matches[0]["views"] == 10
        assert matches[0]["solution"] == "Recalibrate the occlusion sensor"

    def test_overlapping_record_beats_unrelated(self, repo: Repository, sample_fault: FaultRecord):
        sample_fault.fault_description = "Screen goes blank"
        sample_fault.views = 100
        unrelated = repo.save_fault(sample_fault)
        sample_fault.fault_description = "Pump leaking fluid near inlet valve"
        sample_fault.views = 0
        overlapping = repo.save_fault(sample_fault)

        ids = [m["id"] for m in KnowledgeRetriever(repo).find_similar("pump leaking fluid from valve")]
        assert ids == [overlapping]
        assert unrelated not in ids

    def test_only_first_three_tokens_count(self, populated_repo: Repository):
        retriever = KnowledgeRetriever(populated_repo)
        # "flickers" is the fourth token and must not pull in the monitor fault
        matches = retriever.find_similar("noisy squeaky pump flickers")
        assert [m["description"] for m in matches] == [
            "pump alarm keeps sounding",
            "pump leaking fluid from valve",
        ]

    def test_limit(self, populated_repo: Repository):
        matches = KnowledgeRetriever(populated_repo).find_similar("pump fluid", limit=1)
        assert len(matches) == 1

    def test_empty_description(self, populated_repo: Repository):
        assert KnowledgeRetriever(populated_repo).find_similar("   ") == []

    def test_empty_knowledge_base(self, repo: Repository):
        assert KnowledgeRetriever(repo).find_similar("pump leaking") == []


class TestRelatedFaults:
    def test_similarity_scores(self, populated_repo: Repository):
        retriever = KnowledgeRetriever(populated_repo)
        description = "pump leaking fluid from valve"
        related = retriever.related_faults(description, retriever.find_similar(description))
        by_description = {r.description: r.similarity_score for r in related}
        assert by_description["pump leaking fluid from valve"] == 1.0
        # Only "pump" of the five query tokens appears
        assert by_description["pump alarm keeps sounding"] == 0.2

    def test_custom_scorer(self, populated_repo: Repository):
        retriever = KnowledgeRetriever(populated_repo, scorer=lambda content, query: 0.5)
        related = retriever.related_faults("pump", retriever.find_similar("pump"))
        assert {r.similarity_score for r in related} == {0.5}


class TestSuggestions:
    def test_suggestions_for_device(self, repo: Repository, sample_fault: FaultRecord):
        repo.save_fault(sample_fault)
        suggestions = KnowledgeRetriever(repo).suggestions("Ventilator", "Acme")
        assert suggestions[0]["solution"].startswith("Replace the valve seat")
        assert KnowledgeRetriever(repo).suggestions("Ventilator", "Other") == []
