"""Health content search (external collaborator)."""

from app.core.content.search import (
    SearchResult,
    ContentSearchClient,
    get_content_search_client,
    is_trusted_source,
)

__all__ = [
    "SearchResult",
    "ContentSearchClient",
    "get_content_search_client",
    "is_trusted_source",
]
