"""Tests for faultkb.knowledge.models and faultkb.errors."""

from __future__ import annotations

from faultkb.errors import PersistenceFailed, QuotaExceeded, SourceUnavailable, SynthesisFailed
from faultkb.knowledge.models import (
    AnalysisRequest,
    AnalysisResult,
    Caller,
    RelatedFault,
    join_parts,
    split_parts,
)


class TestParts:
    def test_join_and_split(self):
        assert join_parts(["P-100", "P-200"]) == "P-100,P-200"
        assert split_parts("P-100,P-200") == ["P-100", "P-200"]

    def test_empty(self):
        assert join_parts([]) == ""
        assert split_parts("") == []
        assert split_parts(None) == []

    def test_whitespace_preserved(self):
        assert split_parts(join_parts([" O-ring ", "P-1"])) == [" O-ring ", "P-1"]

    def test_comma_inside_a_part_name_splits_it(self):
        """Part names are stored comma-joined, so a comma in a name does not survive."""
        assert split_parts(join_parts(["Screw, M3", "P-1"])) == ["Screw", " M3", "P-1"]


class TestCaller:
    def test_only_admin_is_unlimited(self):
        assert Caller(1, role="admin").unlimited
        assert not Caller(2).unlimited


class TestAnalysisRequest:
    def test_search_query(self):
        request = AnalysisRequest(
            device_type="Ventilator", manufacturer="Acme", device_model="V200", fault_description="alarm"
        )
        assert request.search_query() == "Ventilator alarm"
        assert request.save_to_knowledge_base is True
        assert request.search_web is False


class TestAnalysisResult:
    def test_to_dict(self):
        result = AnalysisResult(
            root_cause="r",
            solution="s",
            parts_required=["P-1"],
            estimated_repair_time="1h",
            difficulty="easy",
            related_faults=[RelatedFault(id=3, description="d", similarity_score=0.5)],
        )
        data = result.to_dict()
        assert data["related_faults"] == [{"id": 3, "description": "d", "similarity_score": 0.5}]
        assert data["references"] == []


class TestErrors:
    def test_kinds_and_retryability(self):
        assert QuotaExceeded(1).to_dict() == {
            "error": "quota_exceeded",
            "message": "Query quota exceeded. Please upgrade your subscription.",
            "retryable": False,
        }
        assert SourceUnavailable("Forum", "https://f.example", "HTTP 503").retryable
        assert not SynthesisFailed("bad shape", retryable=False).retryable
        assert PersistenceFailed("disk full").to_dict()["error"] == "persistence_failed"
