"""Fetches a single external source politely.

One fetch = optional robots.txt check, GET with browser-like headers under a
timeout and a small retry budget, then structural extraction of the main
text. Every failure surfaces as SourceUnavailable so the orchestrator can
skip the source and carry on.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from urllib.parse import quote_plus, urljoin, urlparse
from urllib.robotparser import RobotFileParser

import httpx
from bs4 import BeautifulSoup

from faultkb.errors import PolicyCheckFailed, SourceUnavailable
from faultkb.knowledge.models import SearchSource

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 8000
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Most specific first; whole-body text is the fallback.
CONTENT_SELECTORS = [
    "#manual-content",
    "article",
    "main",
    ".post-content",
    ".entry-content",
]

_WHITESPACE = re.compile(r"\s+")


@dataclass
class FetchedPage:
    title: str
    url: str
    content: str


class SourceFetcher:
    """Fetches and cleans one source page at a time over a shared client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 15.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        credentials: dict[str, str] | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._credentials = credentials or {}

    async def fetch(self, source: SearchSource, query: str) -> FetchedPage:
        url = build_source_url(source.url, query)

        if source.respects_robots_txt:
            try:
                allowed = await self.is_allowed(url)
            except PolicyCheckFailed as e:
                logger.warning(f"robots.txt check failed for {source.name}, allowing: {e}")
                allowed = True
            if not allowed:
                raise SourceUnavailable(source.name, url, "disallowed by robots.txt")

        response = await self._get_with_retries(source, url)
        try:
            return parse_page(response.text, str(response.url))
        except Exception as e:
            raise SourceUnavailable(source.name, url, f"parse error: {e}") from e

    async def is_allowed(self, url: str) -> bool:
        """Check the site's robots.txt. Raises PolicyCheckFailed if it can't be read."""
        parsed = urlparse(url)
        robots_url = urljoin(f"{parsed.scheme}://{parsed.netloc}", "/robots.txt")
        try:
            response = await self._client.get(
                robots_url, headers=BROWSER_HEADERS, timeout=self._timeout
            )
        except httpx.HTTPError as e:
            raise PolicyCheckFailed(f"{robots_url}: {e}") from e

        if response.status_code == 404:
            return True
        if response.status_code >= 400:
            raise PolicyCheckFailed(f"{robots_url}: HTTP {response.status_code}")

        parser = RobotFileParser()
        parser.set_url(robots_url)
        parser.parse(response.text.splitlines())
        return parser.can_fetch(BROWSER_HEADERS["User-Agent"], url)

    async def _get_with_retries(self, source: SearchSource, url: str) -> httpx.Response:
        headers = dict(BROWSER_HEADERS)
        if source.requires_auth and source.credential_ref:
            cookie = self._credentials.get(source.credential_ref.lower())
            if cookie:
                headers["Cookie"] = cookie
            else:
                logger.warning(f"No credential '{source.credential_ref}' configured for {source.name}")

        last_error = "unknown error"
        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.get(
                    url, headers=headers, timeout=self._timeout, follow_redirects=True
                )
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
            except httpx.HTTPError as e:
                last_error = f"request error: {e}"
            else:
                if response.is_success:
                    return response
                last_error = f"HTTP {response.status_code}"
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    break

            if attempt < self._max_retries:
                delay = self._retry_delay * (2 ** attempt)
                logger.debug(f"Retrying {source.name} in {delay}s ({last_error})")
                await asyncio.sleep(delay)

        raise SourceUnavailable(source.name, url, last_error)


def build_source_url(template: str, query: str) -> str:
    """Fill a "{query}" placeholder, if the source URL has one."""
    if "{query}" in template:
        return template.replace("{query}", quote_plus(query))
    return template


def parse_page(html: str, url: str) -> FetchedPage:
    """Title and main text of an HTML page, whitespace collapsed and capped."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    title = ""
    if soup.h1:
        title = soup.h1.get_text(" ", strip=True)
    if not title and soup.title:
        title = soup.title.get_text(" ", strip=True)
    title = title or "Technical Document"

    content = ""
    for selector in CONTENT_SELECTORS:
        nodes = soup.select(selector)
        if nodes:
            content = " ".join(node.get_text(" ") for node in nodes)
            if content.strip():
                break
    if not content.strip():
        body = soup.body or soup
        content = body.get_text(" ")

    content = _WHITESPACE.sub(" ", content).strip()[:MAX_CONTENT_CHARS]
    return FetchedPage(title=title, url=url, content=content)
