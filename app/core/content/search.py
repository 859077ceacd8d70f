"""
HTTP client for the health content search service.

The search service indexes The Eve Appeal's published health content.
It exposes:
- POST /api/search - Best matching content chunk for a query
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """Best content match for a query."""

    found: bool
    content: Optional[str] = None
    source: Optional[str] = None
    source_url: Optional[str] = None
    relevance_score: float = 0.0

    @classmethod
    def not_found(cls) -> "SearchResult":
        return cls(found=False)

    @classmethod
    def from_dict(cls, data: dict) -> "SearchResult":
        """Create from API response dict."""
        content = data.get("content")
        score = data.get("relevance_score", data.get("score"))
        return cls(
            found=bool(data.get("found", content)),
            content=content,
            source=data.get("source", data.get("title")),
            source_url=data.get("source_url", data.get("url")),
            relevance_score=float(score) if score is not None else 0.0,
        )


def is_trusted_source(url: Optional[str], domain: Optional[str] = None) -> bool:
    """Only content hosted on the trusted domain (or a subdomain) may be shown."""
    if not url:
        return False
    trusted = (domain or get_settings().trusted_content_domain).lower()
    host = (urlparse(url).hostname or "").lower()
    return host == trusted or host.endswith(f".{trusted}")


class ContentSearchClient:
    """HTTP client for the content search API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize client.

        Args:
            base_url: Search service base URL (defaults to settings)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.base_url = base_url if base_url is not None else settings.content_search_url
        self.timeout = timeout if timeout is not None else settings.content_search_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def search_content(self, query: str) -> SearchResult:
        """Find the best content for a query.

        Args:
            query: User's question

        Returns:
            SearchResult (found=False when unavailable or nothing matched)
        """
        if not self.base_url:
            logger.debug("Content search not configured")
            return SearchResult.not_found()

        client = await self._get_client()

        try:
            response = await client.post("/api/search", json={"query": query})
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return SearchResult.from_dict(data)

        except httpx.HTTPError as e:
            logger.error(f"Content search failed: {e}")
            return SearchResult.not_found()

        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Content search returned an unreadable response: {e}")
            return SearchResult.not_found()


# Singleton
_content_search_client: Optional[ContentSearchClient] = None


def get_content_search_client() -> ContentSearchClient:
    """Get singleton ContentSearchClient."""
    global _content_search_client
    if _content_search_client is None:
        _content_search_client = ContentSearchClient()
    return _content_search_client
