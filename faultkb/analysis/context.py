"""Assembles bounded prompt context from prior faults, documents and web snippets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from faultkb.knowledge.models import Document, ScrapedContent

logger = logging.getLogger(__name__)

PER_DOCUMENT_CHARS = 5000
DOCUMENT_BUDGET_CHARS = 20000
PER_SNIPPET_CHARS = 1500
MAX_SNIPPETS = 5


class DocumentStore(Protocol):
    def get_document(self, document_id: int, owner_id: int) -> Document | None: ...


@dataclass
class AssembledContext:
    knowledge_text: str = ""
    document_text: str = ""
    web_text: str = ""
    included_document_ids: list[int] = field(default_factory=list)
    omitted_document_ids: list[int] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        """True when some requested documents did not make it into the context."""
        return bool(self.omitted_document_ids)


class ContextAssembler:
    """Builds the context blocks handed to the synthesizer."""

    def __init__(
        self,
        documents: DocumentStore,
        per_document_chars: int = PER_DOCUMENT_CHARS,
        budget_chars: int = DOCUMENT_BUDGET_CHARS,
    ) -> None:
        self._documents = documents
        self._per_document_chars = per_document_chars
        self._budget_chars = budget_chars

    def assemble(
        self,
        document_ids: list[int],
        owner_id: int,
        knowledge: list[dict] | None = None,
        web_snippets: list[ScrapedContent] | None = None,
    ) -> AssembledContext:
        context = AssembledContext(
            knowledge_text=format_knowledge(knowledge or []),
            web_text=format_web_snippets(web_snippets or []),
        )

        blocks: list[str] = []
        used = 0
        exhausted = False
        for document_id in document_ids:
            if document_id in context.included_document_ids:
                continue
            if document_id in context.omitted_document_ids:
                continue
            if exhausted:
                context.omitted_document_ids.append(document_id)
                continue
            doc = self._documents.get_document(document_id, owner_id)
            if doc is None:
                logger.warning(f"Document {document_id} not found for owner {owner_id}")
                context.omitted_document_ids.append(document_id)
                continue

            block = (
                f"[Source: {doc.file_name} (document {doc.id})]\n"
                f"{doc.extracted_text[: self._per_document_chars]}"
            )
            # Earlier documents win; later ones are dropped once the budget is spent.
            if used + len(block) > self._budget_chars:
                exhausted = True
                context.omitted_document_ids.append(document_id)
                continue
            blocks.append(block)
            used += len(block)
            context.included_document_ids.append(document_id)

        if context.omitted_document_ids:
            logger.info(f"Omitted documents from context: {context.omitted_document_ids}")

        context.document_text = "\n\n".join(blocks)
        return context


def format_knowledge(matches: list[dict]) -> str:
    parts: list[str] = []
    for i, m in enumerate(matches, 1):
        parts.append(f"### Known fault {i} (id {m['id']})")
        parts.append(f"**Description:** {m.get('description', '')}")
        if m.get("solution"):
            parts.append(f"**Solution:** {m['solution']}")
        parts.append("")
    return "\n".join(parts).strip()


def format_web_snippets(snippets: list[ScrapedContent]) -> str:
    parts: list[str] = []
    for s in snippets[:MAX_SNIPPETS]:
        parts.append(f"[Web: {s.title} | {s.url} (relevance {s.relevance_score:.2f})]")
        parts.append(s.content[:PER_SNIPPET_CHARS])
        parts.append("")
    return "\n".join(parts).strip()
