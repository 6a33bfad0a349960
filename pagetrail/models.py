from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Execution status constants
#
# Lifecycle of a parent record:
#   initialized -> inProgress -> completed | error | cancelled
#
# Terminal statuses always carry is_last = True.
# ---------------------------------------------------------------------------

class ExecutionStatus:
    INITIALIZED = "initialized"
    IN_PROGRESS = "inProgress"
    COMPLETED   = "completed"
    ERROR       = "error"
    CANCELLED   = "cancelled"

    TERMINAL_SET: frozenset[str] = frozenset({COMPLETED, ERROR, CANCELLED})


class PaginationStyle:
    LINK     = "link"
    BOOKMARK = "bookmark"
    CURSOR   = "cursor"
    OFFSET   = "offset"
    NONE     = "none"


# Methods that never carry a request body
BODYLESS_METHODS: frozenset[str] = frozenset({"GET", "HEAD"})

# Request headers masked when a record is shown outside the log store
SENSITIVE_HEADERS: frozenset[str] = frozenset({
    "authorization",
    "proxy-authorization",
    "cookie",
    "x-api-key",
    "api-key",
    "x-auth-token",
})
REDACTED = "***"


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: REDACTED if k.lower() in SENSITIVE_HEADERS else v for k, v in headers.items()}


@dataclass(frozen=True)
class ExecutionRequest:
    """
    Input for one paginated crawl. Immutable once the crawl starts.

    method         — HTTP verb, upper-cased.
    url            — Absolute http(s) URL of the first page.
    query_params   — Ordered str -> str map merged into page 1's URL.
    headers        — Sent unchanged on every page.
    body           — Request payload; ignored for GET/HEAD.
    max_iterations — Hard cap on the number of pages fetched.
    table_name     — Sink table for extracted items (optional).
    save_data      — Persist extracted items when True and table_name is set.
    """
    method:         str
    url:            str
    query_params:   dict[str, str] = field(default_factory=dict)
    headers:        dict[str, str] = field(default_factory=dict)
    body:           Any            = None
    max_iterations: int            = 10
    table_name:     Optional[str]  = None
    save_data:      bool           = False

    @property
    def persist_items(self) -> bool:
        return bool(self.save_data and self.table_name)

    @property
    def sends_body(self) -> bool:
        return self.method.upper() not in BODYLESS_METHODS

    def to_dict(self, redact: bool = False) -> dict[str, Any]:
        """redact=True masks credential headers (see SENSITIVE_HEADERS)."""
        return {
            "method":         self.method,
            "url":            self.url,
            "query_params":   dict(self.query_params),
            "headers":        redact_headers(self.headers) if redact else dict(self.headers),
            "body":           self.body,
            "max_iterations": self.max_iterations,
            "table_name":     self.table_name,
            "save_data":      self.save_data,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ExecutionRequest:
        return cls(
            method=d["method"],
            url=d["url"],
            query_params=dict(d.get("query_params") or {}),
            headers=dict(d.get("headers") or {}),
            body=d.get("body"),
            max_iterations=d.get("max_iterations", 10),
            table_name=d.get("table_name"),
            save_data=d.get("save_data", False),
        )


@dataclass
class ExecutionRecord:
    """
    Parent log entry: one per crawl.

    Mutated only through ExecutionLogStore.update_parent_status(); never
    deleted. child_execution_id equals execution_id so parent and children
    share one key space.
    """
    execution_id:          str
    request:               ExecutionRequest
    status:                str           = ExecutionStatus.INITIALIZED
    is_last:               bool          = False
    total_items_processed: int           = 0
    pages_processed:       int           = 0
    pagination_type:       Optional[str] = None
    last_error:            Optional[dict[str, Any]] = None
    created_at:            str           = field(default_factory=utc_now)
    updated_at:            str           = field(default_factory=utc_now)

    @property
    def child_execution_id(self) -> str:
        return self.execution_id

    @property
    def is_terminal(self) -> bool:
        return self.status in ExecutionStatus.TERMINAL_SET

    def to_dict(self, redact: bool = False) -> dict[str, Any]:
        return {
            "execution_id":          self.execution_id,
            "child_execution_id":    self.child_execution_id,
            "is_parent":             True,
            "request":               self.request.to_dict(redact=redact),
            "status":                self.status,
            "is_last":               self.is_last,
            "total_items_processed": self.total_items_processed,
            "pages_processed":       self.pages_processed,
            "pagination_type":       self.pagination_type,
            "last_error":            self.last_error,
            "created_at":            self.created_at,
            "updated_at":            self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ExecutionRecord:
        return cls(
            execution_id=d["execution_id"],
            request=ExecutionRequest.from_dict(d["request"]),
            status=d.get("status", ExecutionStatus.INITIALIZED),
            is_last=d.get("is_last", False),
            total_items_processed=d.get("total_items_processed", 0),
            pages_processed=d.get("pages_processed", 0),
            pagination_type=d.get("pagination_type"),
            last_error=d.get("last_error"),
            created_at=d["created_at"],
            updated_at=d.get("updated_at", d["created_at"]),
        )


@dataclass(frozen=True)
class ChildExecutionRecord:
    """Per-page log entry. Immutable once appended."""
    execution_id:          str
    child_execution_id:    str
    page_number:           int
    items_in_page:         int
    total_items_processed: int             # cumulative, including this page
    request_url:           str
    pagination_type:       str
    response_status:       int
    is_last:               bool
    item_ids:              tuple[str, ...] = ()
    items_saved:           int             = 0
    timestamp:             str             = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id":          self.execution_id,
            "child_execution_id":    self.child_execution_id,
            "is_parent":             False,
            "page_number":           self.page_number,
            "items_in_page":         self.items_in_page,
            "total_items_processed": self.total_items_processed,
            "request_url":           self.request_url,
            "pagination_type":       self.pagination_type,
            "response_status":       self.response_status,
            "is_last":               self.is_last,
            "item_ids":              list(self.item_ids),
            "items_saved":           self.items_saved,
            "timestamp":             self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ChildExecutionRecord:
        return cls(
            execution_id=d["execution_id"],
            child_execution_id=d["child_execution_id"],
            page_number=d["page_number"],
            items_in_page=d["items_in_page"],
            total_items_processed=d["total_items_processed"],
            request_url=d["request_url"],
            pagination_type=d["pagination_type"],
            response_status=d["response_status"],
            is_last=d["is_last"],
            item_ids=tuple(d.get("item_ids", [])),
            items_saved=d.get("items_saved", 0),
            timestamp=d["timestamp"],
        )


@dataclass
class PaginationState:
    """Working memory of a running crawl. Never persisted."""
    url:                 str
    style:               Optional[str]            = None   # None until page 1 is detected
    page:                int                      = 1
    has_more_pages:      bool                     = True
    last_error:          Optional[dict[str, Any]] = None
    rate_limit_attempts: int                      = 0
    items_processed:     int                      = 0
    pages_processed:     int                      = 0


@dataclass(frozen=True)
class ExtractedItem:
    """A normalised page item: resolved identifier plus its cleaned payload."""
    item_id:     str
    payload:     Any
    original_id: Any = None
