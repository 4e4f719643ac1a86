"""Diagnosis synthesis using Claude under a strict output schema.

The model is forced to answer through a single tool whose input schema is
DiagnosisPayload's JSON schema. The payload is then validated again on our
side: missing fields, extra fields, wrong types and unknown difficulty values
are all hard failures, never defaulted.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

import anthropic
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from faultkb.analysis.context import AssembledContext
from faultkb.config import DEFAULT_MODEL
from faultkb.errors import SynthesisFailed
from faultkb.knowledge.models import AnalysisRequest, AnalysisResult

logger = logging.getLogger(__name__)

MAX_TOKENS = 2048
TOOL_NAME = "record_diagnosis"

SYSTEM_PROMPT = """\
You are a senior biomedical service engineer with 20+ years of experience across \
ventilators, imaging (ultrasound, CT, MRI), dialysis machines and patient monitors.

Rules:
1. Use precise, professional English for all technical terms, spare parts and procedures.
2. Give a root-cause analysis at component level (capacitors, MOSFETs, sensors, boards) \
when the evidence supports it.
3. Explain error codes precisely when the device and code are known.
4. Always put electrical and patient safety first (leakage current, calibration, lockout).
5. Cite the provided documents, known faults or web sources you relied on in "references".
"""

ANALYSIS_PROMPT = """\
## Expert Analysis Request

**Device:** {manufacturer} {device_model} ({device_type})
**Fault:** {fault_description}
**Symptoms:** {symptoms}
**Error Codes:** {error_codes}

## Known Faults From The Knowledge Base
<knowledge_base>
{knowledge}
</knowledge_base>

## Uploaded Documents
<documents>
{documents}
</documents>

## Web Sources
<web_sources>
{web}
</web_sources>

## Instructions

Diagnose the fault. Respond ONLY by calling the `{tool_name}` tool with exactly these fields:
{{
  "rootCause": "Deep technical cause",
  "solution": "Step-by-step repair guide",
  "partsRequired": ["Exact part names or numbers"],
  "estimatedRepairTime": "e.g. 2 hours",
  "difficulty": "easy|medium|hard|expert",
  "references": ["Manual pages, known fault ids or web sources used"]
}}
Do not add any other fields.
"""


class DiagnosisPayload(BaseModel):
    """The only shape accepted back from the generative service."""

    model_config = ConfigDict(extra="forbid", strict=True)

    root_cause: str = Field(alias="rootCause", min_length=1)
    solution: str = Field(min_length=1)
    parts_required: list[str] = Field(alias="partsRequired")
    estimated_repair_time: str = Field(alias="estimatedRepairTime")
    difficulty: Literal["easy", "medium", "hard", "expert"]
    references: list[str]


DIAGNOSIS_TOOL = {
    "name": TOOL_NAME,
    "description": "Record the structured diagnosis for the reported device fault.",
    "input_schema": DiagnosisPayload.model_json_schema(by_alias=True),
}


class Synthesizer:
    """Turns a request plus assembled context into a validated diagnosis."""

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        model: str = DEFAULT_MODEL,
        timeout: float | None = None,
    ) -> None:
        self._client = anthropic_client
        self._model = model
        self._timeout = timeout

    def synthesize(self, request: AnalysisRequest, context: AssembledContext) -> AnalysisResult:
        """One call to the service; raises SynthesisFailed on any failure."""
        prompt = build_prompt(request, context)

        kwargs: dict[str, Any] = {}
        if self._timeout is not None:
            kwargs["timeout"] = self._timeout

        try:
            response = self._client.messages.create(
                model=self._model,
                max_tokens=MAX_TOKENS,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                tools=[DIAGNOSIS_TOOL],
                tool_choice={"type": "tool", "name": TOOL_NAME},
                **kwargs,
            )
        except anthropic.APIStatusError as e:
            logger.error(f"Synthesis service returned {e.status_code}: {e}")
            raise SynthesisFailed(
                f"Generative service returned status {e.status_code}",
                retryable=e.status_code == 429 or e.status_code >= 500,
            ) from e
        except anthropic.APIError as e:
            logger.error(f"Synthesis service unreachable: {e}")
            raise SynthesisFailed(f"Generative service unreachable: {e}") from e

        payload = parse_payload(response)
        return AnalysisResult(
            root_cause=payload.root_cause,
            solution=payload.solution,
            parts_required=list(payload.parts_required),
            estimated_repair_time=payload.estimated_repair_time,
            difficulty=payload.difficulty,
            references=list(payload.references),
        )


def build_prompt(request: AnalysisRequest, context: AssembledContext) -> str:
    return ANALYSIS_PROMPT.format(
        manufacturer=request.manufacturer,
        device_model=request.device_model,
        device_type=request.device_type,
        fault_description=request.fault_description,
        symptoms=request.symptoms or "N/A",
        error_codes=request.error_codes or "N/A",
        knowledge=context.knowledge_text or "(no similar faults on record)",
        documents=context.document_text or "(no documents attached)",
        web=context.web_text or "(no web search performed)",
        tool_name=TOOL_NAME,
    )


def parse_payload(response: anthropic.types.Message) -> DiagnosisPayload:
    """Extract and strictly validate the diagnosis from a Messages API response."""
    if not response.content:
        raise SynthesisFailed("Empty response from generative service")

    raw: Any = None
    for block in response.content:
        if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == TOOL_NAME:
            raw = block.input
            break

    if raw is None:
        # No tool call: accept a bare JSON text answer, validated just as strictly.
        text = _first_text(response)
        if text is None:
            raise SynthesisFailed("Response contained neither a diagnosis tool call nor text")
        text = _strip_code_fence(text)
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse diagnosis JSON: {text[:200]}")
            raise SynthesisFailed("Diagnosis was not valid JSON", retryable=False) from e

    if not isinstance(raw, dict):
        raise SynthesisFailed("Diagnosis payload is not a JSON object", retryable=False)

    try:
        return DiagnosisPayload.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Diagnosis failed schema validation: {e}")
        raise SynthesisFailed(
            f"Diagnosis violates the schema: {e.error_count()} error(s)", retryable=False
        ) from e


def _first_text(response: anthropic.types.Message) -> str | None:
    for block in response.content:
        text = getattr(block, "text", None)
        if isinstance(text, str):
            return text.strip()
    return None


def _strip_code_fence(text: str) -> str:
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text
