"""
Pagination style detection and next-page resolution.

Detection runs once, on page 1's response, by walking DETECTORS in order
and taking the first style any predicate reports. The style is then fixed
for the rest of the crawl; resolve_next() only ever consults that style.

    link      Link header carrying rel="next" (Shopify, GitHub)
    bookmark  body["bookmark"] token (Pinterest)
    cursor    body["next_cursor"] or body["cursor"] token
    offset    body["total_count"] or body["total"] with offset/limit in the URL
    none      single page
"""
import logging
import re
from numbers import Number
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pagetrail.models import PaginationStyle

log = logging.getLogger(__name__)

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')

DEFAULT_OFFSET = 0
DEFAULT_LIMIT  = 10


# ---------------------------------------------------------------------------
# Query-string helpers
# ---------------------------------------------------------------------------

def query_items(url: str) -> list[tuple[str, str]]:
    return parse_qsl(urlsplit(url).query, keep_blank_values=True)


def query_value(url: str, key: str) -> Optional[str]:
    for k, v in query_items(url):
        if k == key:
            return v
    return None


def _replace_query(url: str, items: list[tuple[str, str]]) -> str:
    parts = urlsplit(url)
    return urlunsplit(parts._replace(query=urlencode(items)))


def set_query_param(url: str, key: str, value: Any) -> str:
    """Set key=value on url, replacing every existing occurrence in place."""
    items = query_items(url)
    value = str(value)
    out: list[tuple[str, str]] = []
    replaced = False
    for k, v in items:
        if k == key:
            if not replaced:
                out.append((k, value))
                replaced = True
            continue
        out.append((k, v))
    if not replaced:
        out.append((key, value))
    return _replace_query(url, out)


def drop_query_param(url: str, key: str) -> str:
    return _replace_query(url, [(k, v) for k, v in query_items(url) if k != key])


def merge_query_params(url: str, params: Mapping[str, Any]) -> str:
    """
    Append params that are not already present in url.

    Empty values are skipped; parameters already in the URL win over the
    configured ones.
    """
    items    = query_items(url)
    existing = {k for k, _ in items}
    for key, value in params.items():
        if value in (None, "") or key in existing:
            continue
        items.append((key, str(value)))
    return _replace_query(url, items)


def _to_int(v: Any, default: int) -> int:
    if v is None:
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _is_numeric(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, Number):
        return True
    if isinstance(v, str):
        try:
            float(v)
        except ValueError:
            return False
        return True
    return False


def _first_present(body: Any, *keys: str) -> Any:
    """First token among keys; None, "" and booleans count as absent."""
    if not isinstance(body, dict):
        return None
    for key in keys:
        value = body.get(key)
        if value is None or value == "" or isinstance(value, bool):
            continue
        return value
    return None


def _first_numeric(body: Any, *keys: str) -> Any:
    if not isinstance(body, dict):
        return None
    for key in keys:
        if _is_numeric(body.get(key)):
            return body[key]
    return None


# ---------------------------------------------------------------------------
# Detectors: pure (headers, body) -> style | None, evaluated in order
# ---------------------------------------------------------------------------

Detector = Callable[[Mapping[str, str], Any], Optional[str]]


def _link_header(headers: Mapping[str, str]) -> Optional[str]:
    value = headers.get("Link")
    if value is None:
        # Plain dicts are not case-insensitive
        for k, v in headers.items():
            if k.lower() == "link":
                return v
    return value


def detect_link(headers: Mapping[str, str], body: Any) -> Optional[str]:
    link = _link_header(headers)
    if link and 'rel="next"' in link:
        return PaginationStyle.LINK
    return None


def detect_bookmark(headers: Mapping[str, str], body: Any) -> Optional[str]:
    if _first_present(body, "bookmark") is not None:
        return PaginationStyle.BOOKMARK
    return None


def detect_cursor(headers: Mapping[str, str], body: Any) -> Optional[str]:
    if _first_present(body, "next_cursor", "cursor") is not None:
        return PaginationStyle.CURSOR
    return None


def detect_offset(headers: Mapping[str, str], body: Any) -> Optional[str]:
    if _first_numeric(body, "total_count", "total") is not None:
        return PaginationStyle.OFFSET
    return None


DETECTORS: tuple[Detector, ...] = (
    detect_link,
    detect_bookmark,
    detect_cursor,
    detect_offset,
)


def detect_style(headers: Mapping[str, str], body: Any) -> str:
    for detector in DETECTORS:
        style = detector(headers, body)
        if style is not None:
            return style
    return PaginationStyle.NONE


# ---------------------------------------------------------------------------
# Next-page resolution
# ---------------------------------------------------------------------------

def extract_next_link(link_header: Optional[str]) -> Optional[str]:
    if not link_header:
        return None
    match = _NEXT_LINK_RE.search(link_header)
    return match.group(1) if match else None


def _original_limit(query_params: Mapping[str, Any], original_url: str) -> Optional[str]:
    limit = query_params.get("limit")
    if limit not in (None, ""):
        return str(limit)
    return query_value(original_url, "limit")


def resolve_next(
    style: str,
    current_url: str,
    headers: Mapping[str, str],
    body: Any,
    query_params: Mapping[str, Any],
    original_url: str,
) -> Optional[str]:
    """
    Compute the URL of the next page, or None when pagination is exhausted.

    current_url is the URL actually fetched for this page (page 1 includes
    the merged query params).
    """
    if style == PaginationStyle.LINK:
        next_url = extract_next_link(_link_header(headers))
        if not next_url:
            return None
        next_url = drop_query_param(next_url, "status")
        limit = _original_limit(query_params, original_url)
        if limit is not None and query_value(next_url, "limit") is None:
            next_url = set_query_param(next_url, "limit", limit)
        return next_url

    if style == PaginationStyle.BOOKMARK:
        bookmark = _first_present(body, "bookmark")
        if bookmark is None:
            return None
        return set_query_param(current_url, "bookmark", bookmark)

    if style == PaginationStyle.CURSOR:
        cursor = _first_present(body, "next_cursor", "cursor")
        if cursor is None:
            return None
        return set_query_param(current_url, "cursor", cursor)

    if style == PaginationStyle.OFFSET:
        total = _first_numeric(body, "total_count", "total")
        if total is None:
            return None
        offset = _to_int(query_value(current_url, "offset"), DEFAULT_OFFSET)
        limit  = _to_int(query_value(current_url, "limit"), DEFAULT_LIMIT)
        if limit <= 0 or offset + limit >= float(total):
            return None
        return set_query_param(current_url, "offset", offset + limit)

    return None
