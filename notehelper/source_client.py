"""NoteHelper GraphQL API client.

Fetches saved reading items page by page, plus the item count and a
connection check.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import requests

from notehelper import config
from notehelper.models import Article
from notehelper.retry import request_with_retry

log = logging.getLogger(__name__)

_SEARCH_QUERY = """
query Search($after: Int, $first: Int, $query: String) {
  search(after: $after, first: $first, query: $query) {
    edges {
      node {
        id
        title
        author
        %(content)s
        url
        savedAt
        publishedAt
        description
        siteName
        image
        type
        wordsCount
        readLength
        state
        archivedAt
        note
        highlights { id quote annotation color highlightedAt updatedAt }
        labels { id name color description }
      }
    }
    pageInfo { hasNextPage totalCount }
  }
}
"""


class SourceError(Exception):
    """The source answered, but not with something we can use."""


def mask_api_key(api_key: Optional[str]) -> str:
    """Show only the first 3 and last 6 characters of a key."""
    if not api_key:
        return "undefined"
    if len(api_key) <= 9:
        return "***"
    return f"{api_key[:3]}...{api_key[-6:]}"


def _headers() -> dict:
    headers = {"Content-Type": "application/json"}
    if config.NOTEHELPER_API_KEY:
        headers["x-api-key"] = config.NOTEHELPER_API_KEY
    return headers


def _base_url() -> str:
    return re.sub(r"/api/graphql/?$", "", config.NOTEHELPER_ENDPOINT.rstrip("/"))


def _graphql(query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
    log.debug(
        "GraphQL POST %s variables=%s key=%s",
        config.NOTEHELPER_ENDPOINT, variables, mask_api_key(config.NOTEHELPER_API_KEY),
    )
    resp = request_with_retry(
        "POST", config.NOTEHELPER_ENDPOINT, service="Source",
        headers=_headers(), json={"query": query, "variables": variables},
    )
    try:
        result = resp.json()
    except ValueError as exc:
        raise SourceError(f"Invalid JSON response: {resp.text[:200]}") from exc

    if not isinstance(result, dict):
        raise SourceError("Unexpected response structure")

    errors = result.get("errors")
    if errors:
        raise SourceError(", ".join(e.get("message", str(e)) for e in errors))

    return _unwrap(result)


def _unwrap(result: Dict[str, Any]) -> Dict[str, Any]:
    """Accept {data: {search: ...}}, {data: ...} and a bare {edges, pageInfo}."""
    if result.get("data") is not None:
        data = result["data"]
        if isinstance(data, dict) and data.get("search") is not None:
            return data["search"]
        return data
    if "edges" in result and "pageInfo" in result:
        log.debug("Source returned search content without a data wrapper")
        return result
    log.error("Unexpected response structure, keys: %s", sorted(result))
    raise SourceError("Unexpected response structure")


# -- Items --


def build_search_query(updated_at: Optional[str] = None, query: str = "") -> str:
    """Combine the custom query with the modified-since filter."""
    search = query or ""
    if updated_at:
        search += f" updated:{updated_at}"
    return search


def get_items(
    after: int = 0,
    first: int = 15,
    updated_at: Optional[str] = None,
    query: str = "",
    include_content: bool = True,
) -> Tuple[List[Article], bool]:
    """Fetch one page of items.

    Returns (articles, has_next_page).
    """
    variables = {
        "after": after,
        "first": first,
        "query": build_search_query(updated_at, query),
    }
    graphql = _SEARCH_QUERY % {"content": "content" if include_content else ""}
    data = _graphql(graphql, variables)

    if not isinstance(data, dict) or data.get("edges") is None:
        raise SourceError("Invalid response: edges field is missing")

    articles = []
    for edge in data["edges"]:
        node = (edge or {}).get("node") or {}
        if not node.get("id"):
            log.warning("Skipping item without id: %.100s", node.get("title", ""))
            continue
        try:
            articles.append(Article.from_dict(node))
        except (ValueError, TypeError, AttributeError) as e:
            log.warning("Skipping malformed item %s: %s", node.get("id"), e)
    page_info = data.get("pageInfo") or {}
    has_next = bool(page_info.get("hasNextPage", False))
    log.debug(
        "Fetched %d item(s) at offset %d (next=%s, total=%s)",
        len(articles), after, has_next, page_info.get("totalCount"),
    )
    return articles, has_next


def get_article_count() -> int:
    """Total number of items stored on the server."""
    resp = request_with_retry(
        "GET", f"{_base_url()}/api/stats/article-count", service="Source", headers=_headers(),
    )
    return int(resp.json().get("count", 0))


def test_connection() -> bool:
    """Fetch a single item to verify endpoint and key. Returns True on success."""
    try:
        get_items(after=0, first=1, include_content=False)
    except (requests.exceptions.RequestException, SourceError) as e:
        log.warning("Source connection failed: %s", e)
        return False
    return True
