"""End-to-end tests for faultkb.analysis.pipeline with a mocked model."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from faultkb.analysis.pipeline import DiagnosisPipeline, validate_request
from faultkb.analysis.synthesizer import Synthesizer
from faultkb.errors import InvalidInput, QuotaExceeded, SynthesisFailed
from faultkb.knowledge.models import AnalysisRequest, ScrapedContent
from faultkb.search.extractor import MaintenanceInfo
from faultkb.search.orchestrator import SearchOutcome
from faultkb.storage.repository import Repository


@pytest.fixture
def request_() -> AnalysisRequest:
    return AnalysisRequest(
        device_type="Ventilator",
        manufacturer="Acme",
        device_model="V200",
        fault_description="pressure alarm",
        save_to_knowledge_base=True,
        search_web=False,
    )


@pytest.fixture
def pipeline(repo: Repository, anthropic_client: MagicMock) -> DiagnosisPipeline:
    return DiagnosisPipeline(repo, Synthesizer(anthropic_client))


def _fake_search(calls: list):
    def search(query: str, timeout):
        calls.append((query, timeout))
        page = ScrapedContent(
            title="Alarm fix",
            url="https://forum.example/t/9",
            content="Replace the pressure transducer.",
            relevance_score=0.5,
            source_name="Forum",
        )
        return SearchOutcome(
            query=query,
            results=[page],
            sources_attempted=["Forum"],
            extractions={page.url: MaintenanceInfo(procedures=["Replace the pressure transducer"])},
        )

    return search


class TestAnalyze:
    def test_end_to_end(self, repo, pipeline, user_id, request_):
        outcome = pipeline.analyze(user_id, request_)

        assert outcome.result.parts_required == ["P-445"]
        assert outcome.queries_remaining == 9
        row = repo._conn.execute(
            "SELECT parts_required FROM faults WHERE id = ?", (outcome.fault_id,)
        ).fetchone()
        assert row["parts_required"] == "P-445"

        [entry] = repo.get_query_history(user_id)
        assert entry["search_performed"] is False
        assert outcome.fault_id in entry["related_fault_ids"]

    def test_startup_alarm_scenario(self, repo, user_id, tool_response):
        client = MagicMock()
        client.messages.create.return_value = tool_response({
            "rootCause": "Faulty pressure sensor",
            "solution": "Replace sensor P-445",
            "partsRequired": ["P-445"],
            "estimatedRepairTime": "1 hour",
            "difficulty": "medium",
            "references": [],
        })
        request = AnalysisRequest(
            device_type="Ventilator",
            manufacturer="Acme",
            device_model="V200",
            fault_description="Alarm E04 on startup, fails to initialize",
        )

        outcome = DiagnosisPipeline(repo, Synthesizer(client)).analyze(user_id, request)

        row = repo._conn.execute(
            "SELECT parts_required FROM faults WHERE id = ?", (outcome.fault_id,)
        ).fetchone()
        assert row["parts_required"] == "P-445"
        assert outcome.result.related_faults == []
        [entry] = repo.get_query_history(user_id)
        assert entry["search_performed"] is False

    def test_related_faults_from_knowledge_base(
        self, repo, pipeline, anthropic_client, user_id, request_, sample_fault
    ):
        sample_fault.fault_description = "pressure sensor drift"
        known = repo.save_fault(sample_fault)

        outcome = pipeline.analyze(user_id, request_)

        assert [f.id for f in outcome.result.related_faults] == [known]
        assert outcome.result.related_faults[0].similarity_score == 0.5
        assert repo.get_fault(outcome.fault_id)["linked_fault_ids"] == [known]
        prompt = anthropic_client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert f"(id {known})" in prompt

    def test_uses_callers_documents(self, repo, pipeline, anthropic_client, user_id, request_):
        doc_id = repo.save_document(user_id, "v200-service.pdf", "Alarm E12 means sensor fault.")
        request_.document_ids = [doc_id]

        outcome = pipeline.analyze(user_id, request_)

        prompt = anthropic_client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "Alarm E12 means sensor fault." in prompt
        assert outcome.omitted_document_ids == []
        assert repo.get_fault(outcome.fault_id)["source_document_id"] == doc_id

    def test_quota_exhausted_has_no_side_effects(self, repo, pipeline, anthropic_client, user_id, request_):
        repo._conn.execute("UPDATE accounts SET queries_remaining = 0 WHERE id = ?", (user_id,))

        with pytest.raises(QuotaExceeded):
            pipeline.analyze(user_id, request_)

        anthropic_client.messages.create.assert_not_called()
        assert repo.get_stats()["total_faults"] == 0
        assert repo.get_query_history(user_id) == []

    def test_admin_is_never_rejected(self, repo, pipeline, admin_id, request_):
        repo._conn.execute("UPDATE accounts SET queries_remaining = 0 WHERE id = ?", (admin_id,))
        outcome = pipeline.analyze(admin_id, request_)
        assert outcome.queries_remaining is None
        assert repo.get_account(admin_id)["total_queries_used"] == 1

    def test_synthesis_failure_charges_nothing(self, repo, user_id, request_, tool_response):
        client = MagicMock()
        client.messages.create.return_value = tool_response({"rootCause": "x"})
        pipeline = DiagnosisPipeline(repo, Synthesizer(client))

        with pytest.raises(SynthesisFailed):
            pipeline.analyze(user_id, request_)

        assert repo.get_account(user_id)["queries_remaining"] == 10
        assert repo.get_stats()["total_faults"] == 0

    def test_not_saved(self, repo, pipeline, user_id, request_):
        request_.save_to_knowledge_base = False
        outcome = pipeline.analyze(user_id, request_)
        assert outcome.fault_id is None
        assert outcome.to_dict()["saved"] is False
        assert repo.get_stats()["total_faults"] == 0
        assert outcome.queries_remaining == 9

    def test_with_web_search(self, repo, anthropic_client, user_id, request_):
        calls: list = []
        pipeline = DiagnosisPipeline(repo, Synthesizer(anthropic_client), search=_fake_search(calls))
        request_.search_web = True

        outcome = pipeline.analyze(user_id, request_, search_timeout=5.0)

        assert calls == [("Ventilator pressure alarm", 5.0)]
        prompt = anthropic_client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "https://forum.example/t/9" in prompt
        assert outcome.to_dict()["search"]["results"] == 1
        assert repo.get_stats()["web_discovered_faults"] == 1
        [entry] = repo.get_query_history(user_id)
        assert entry["search_performed"] is True

    def test_web_search_without_searcher(self, pipeline, user_id, request_):
        request_.search_web = True
        with pytest.raises(InvalidInput):
            pipeline.analyze(user_id, request_)

    def test_unknown_account(self, pipeline, request_):
        with pytest.raises(InvalidInput):
            pipeline.analyze(12345, request_)


class TestSearch:
    def test_learns_without_charging(self, repo, anthropic_client, user_id):
        calls: list = []
        pipeline = DiagnosisPipeline(repo, Synthesizer(anthropic_client), search=_fake_search(calls))

        report = pipeline.search(user_id, "pressure alarm", device_type="Ventilator")

        assert calls == [("Ventilator pressure alarm", None)]
        assert len(report.learned_fault_ids) == 1
        assert report.to_dict()["learned_fault_ids"] == report.learned_fault_ids
        assert repo.get_account(user_id)["queries_remaining"] == 10
        anthropic_client.messages.create.assert_not_called()

    def test_short_query_rejected(self, repo, anthropic_client, user_id):
        pipeline = DiagnosisPipeline(repo, Synthesizer(anthropic_client), search=_fake_search([]))
        with pytest.raises(InvalidInput):
            pipeline.search(user_id, "ab")


class TestValidateRequest:
    def test_missing_device_fields(self):
        with pytest.raises(InvalidInput, match="manufacturer"):
            validate_request(
                AnalysisRequest(
                    device_type="Ventilator",
                    manufacturer=" ",
                    device_model="V200",
                    fault_description="alarm",
                )
            )

    def test_empty_description(self):
        with pytest.raises(InvalidInput):
            validate_request(
                AnalysisRequest(
                    device_type="Ventilator", manufacturer="Acme", device_model="V200", fault_description=""
                )
            )

    def test_document_ids_must_be_ints(self):
        with pytest.raises(InvalidInput):
            validate_request(
                AnalysisRequest(
                    device_type="Ventilator",
                    manufacturer="Acme",
                    device_model="V200",
                    fault_description="alarm",
                    document_ids=["1"],
                )
            )

    def test_valid(self):
        validate_request(
            AnalysisRequest(
                device_type="Ventilator", manufacturer="Acme", device_model="V200", fault_description="alarm"
            )
        )

