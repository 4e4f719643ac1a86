"""Configuration loading for faultkb.

Config sources (in priority order):
1. Explicit arguments passed to functions
2. Environment variables (ANTHROPIC_API_KEY, FAULTKB_DB_PATH, etc.)
3. .env file in current directory
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DB_PATH = Path("faultkb.db")
DEFAULT_MODEL = "claude-sonnet-4-20250514"
CREDENTIAL_ENV_PREFIX = "FAULTKB_CREDENTIAL_"
MAX_SEARCH_CONCURRENCY = 5
MIN_SERIAL_DELAY = 1.0  # seconds


@dataclass
class Config:
    anthropic_api_key: str = ""
    db_path: Path = DEFAULT_DB_PATH
    model: str = DEFAULT_MODEL
    llm_timeout: float = 60.0  # seconds
    llm_max_retries: int = 0  # retries are the caller's decision
    search_concurrency: int = 5
    search_delay: float = 1.0  # seconds between fetches when running serially
    fetch_timeout: float = 15.0
    fetch_retries: int = 2
    credentials: dict[str, str] = field(default_factory=dict)  # credential_ref -> cookie header

    @classmethod
    def load(cls) -> Config:
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            db_path=Path(os.getenv("FAULTKB_DB_PATH", str(DEFAULT_DB_PATH))),
            model=os.getenv("FAULTKB_MODEL", DEFAULT_MODEL),
            llm_timeout=float(os.getenv("FAULTKB_LLM_TIMEOUT", "60")),
            llm_max_retries=int(os.getenv("FAULTKB_LLM_MAX_RETRIES", "0")),
            search_concurrency=int(os.getenv("FAULTKB_SEARCH_CONCURRENCY", "5")),
            search_delay=float(os.getenv("FAULTKB_SEARCH_DELAY", "1.0")),
            fetch_timeout=float(os.getenv("FAULTKB_FETCH_TIMEOUT", "15")),
            fetch_retries=int(os.getenv("FAULTKB_FETCH_RETRIES", "2")),
            credentials=_load_credentials(),
        )

    def validate(self, require_api_key: bool = True) -> list[str]:
        """Return a list of config issues."""
        issues = []
        if require_api_key and not self.anthropic_api_key:
            issues.append("Anthropic API key not set (ANTHROPIC_API_KEY)")
        if self.search_concurrency < 1:
            issues.append("Search concurrency must be at least 1 (FAULTKB_SEARCH_CONCURRENCY)")
        if self.search_concurrency == 1 and self.search_delay < MIN_SERIAL_DELAY:
            issues.append("Serial search needs at least 1s between fetches (FAULTKB_SEARCH_DELAY)")
        if self.search_concurrency > MAX_SEARCH_CONCURRENCY:
            issues.append("Search concurrency above 5 is not polite to sources (FAULTKB_SEARCH_CONCURRENCY)")
        return issues


def _load_credentials() -> dict[str, str]:
    """Collect FAULTKB_CREDENTIAL_<REF> variables keyed by lowercase ref."""
    return {
        key[len(CREDENTIAL_ENV_PREFIX):].lower(): value
        for key, value in os.environ.items()
        if key.startswith(CREDENTIAL_ENV_PREFIX) and value
    }
