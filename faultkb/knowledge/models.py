"""Core data models for faultkb."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

DIFFICULTIES = ("easy", "medium", "hard", "expert")
SOURCE_TYPES = ("forum", "manual_repository", "vendor_site", "technical_blog", "other")
PROVENANCES = ("synthesized", "web_discovered", "admin")

# Queries granted per tier when an account is created or topped up.
SUBSCRIPTION_TIERS = {
    "free": 10,
    "individual": 10,
    "corporate": 20,
}

PARTS_DELIMITER = ","


def join_parts(parts: list[str]) -> str:
    """Flatten a parts list for storage."""
    return PARTS_DELIMITER.join(parts)


def split_parts(stored: str | None) -> list[str]:
    """Inverse of join_parts. Lossless for part names without a comma."""
    if not stored:
        return []
    return stored.split(PARTS_DELIMITER)


@dataclass
class FaultRecord:
    device_type: str
    manufacturer: str
    device_model: str
    fault_description: str
    symptoms: str = ""
    error_codes: str = ""
    root_cause: str = ""
    solution: str = ""
    parts_required: list[str] = field(default_factory=list)
    estimated_repair_time: str = ""
    difficulty: str = "medium"  # "easy" | "medium" | "hard" | "expert"
    views: int = 0
    helpful: int = 0
    not_helpful: int = 0
    source_document_id: int | None = None
    source_website: str | None = None
    linked_fault_ids: list[int] = field(default_factory=list)  # weak refs, may dangle
    provenance: str = "synthesized"  # "synthesized" | "web_discovered" | "admin"
    owner_id: int | None = None
    id: int | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class SearchSource:
    name: str
    url: str  # may contain "{query}"
    source_type: str = "other"
    is_active: bool = True
    last_scraped: datetime | None = None
    respects_robots_txt: bool = True
    requires_auth: bool = False
    credential_ref: str | None = None  # name of a configured credential, never the secret
    added_by: int | None = None
    id: int | None = None


@dataclass
class ScrapedContent:
    title: str
    url: str
    content: str  # whitespace-collapsed, bounded
    relevance_score: float  # 0.0 - 1.0
    source_name: str = ""


@dataclass
class AnalysisRequest:
    device_type: str
    manufacturer: str
    device_model: str
    fault_description: str
    symptoms: str = ""
    error_codes: str = ""
    document_ids: list[int] = field(default_factory=list)
    save_to_knowledge_base: bool = True
    search_web: bool = False

    def search_query(self) -> str:
        return f"{self.device_type} {self.fault_description}".strip()


@dataclass
class RelatedFault:
    id: int
    description: str
    similarity_score: float


@dataclass
class AnalysisResult:
    root_cause: str
    solution: str
    parts_required: list[str]
    estimated_repair_time: str
    difficulty: str
    references: list[str] = field(default_factory=list)
    related_faults: list[RelatedFault] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueryHistoryEntry:
    owner_id: int
    query: str
    device_type: str = ""
    manufacturer: str = ""
    device_model: str = ""
    search_performed: bool = False
    related_fault_ids: list[int] = field(default_factory=list)
    sources_used: list[str] = field(default_factory=list)
    query_cost: int = 1
    id: int | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class Caller:
    """The account a request runs as, resolved once at the boundary."""

    id: int
    role: str = "user"  # "user" | "admin"

    @property
    def unlimited(self) -> bool:
        return self.role == "admin"


@dataclass
class Document:
    id: int
    owner_id: int
    file_name: str
    extracted_text: str
    document_type: str = "other"
