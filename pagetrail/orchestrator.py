import logging
import uuid
from threading import Event as CancelEvent
from typing import Any, Callable, Mapping, Optional

from pagetrail.errors import ExecutionInitError
from pagetrail.events import EventBus, EventType, LoggingSubscriber
from pagetrail.extractor import extract_items
from pagetrail.fetcher import HttpClient, HttpResponse
from pagetrail.models import (
    ChildExecutionRecord,
    ExecutionRecord,
    ExecutionRequest,
    ExecutionStatus,
    PaginationState,
    PaginationStyle,
)
from pagetrail.pagination import detect_style, merge_query_params, resolve_next
from pagetrail.saver import DEFAULT_BATCH_SIZE, BatchItemSaver
from pagetrail.storage import ExecutionLogStore, ItemSink, build_item_sink, build_log_store
from pagetrail.tasks import TaskRegistry

log = logging.getLogger(__name__)

_RATE_LIMIT_MARKER = "rate limit"


def is_rate_limited(response: HttpResponse) -> bool:
    """429, or an `errors` field (string or list) mentioning a rate limit."""
    if response.status == 429:
        return True
    body = response.body
    if not isinstance(body, dict):
        return False
    errors = body.get("errors")
    if errors is None:
        return False
    if isinstance(errors, list):
        return any(_RATE_LIMIT_MARKER in str(e).lower() for e in errors)
    return _RATE_LIMIT_MARKER in str(errors).lower()


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def _error_info(response: HttpResponse, url: str, reason: Optional[str] = None) -> dict[str, Any]:
    return {
        "status":      response.status,
        "status_text": reason or response.reason,
        "body":        response.body,
        "url":         url,
    }


class PaginatedExecutor:
    """
    Runs paginated crawls in the background and records them in the
    execution log.

    run() creates the parent record and returns an acknowledgment at once;
    the crawl itself runs on a TaskRegistry worker:

        1. parent -> inProgress
        2. per page: fetch, detect style (page 1 only), extract items,
           optionally save them, resolve the next URL, append a child record
        3. parent -> completed | error | cancelled, is_last = True

    Pages are strictly sequential. Rate-limited pages are retried against
    the same URL with capped exponential backoff; any other status >= 400
    ends the crawl in `error`.
    """

    def __init__(
        self,
        log_store: ExecutionLogStore,
        registry: TaskRegistry,
        sink: Optional[ItemSink] = None,
        bus: Optional[EventBus] = None,
        settings: Optional[dict[str, Any]] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        settings = settings or {}
        rate_cfg = settings.get("rate_limit", {})

        self._log_store = log_store
        self._registry  = registry
        self._bus       = bus or EventBus()
        self._saver     = (
            BatchItemSaver(sink, settings.get("save", {}).get("batch_size", DEFAULT_BATCH_SIZE))
            if sink is not None else None
        )
        self._base_delay  = float(rate_cfg.get("retry_base_delay_secs", 5.0))
        self._max_delay   = float(rate_cfg.get("retry_max_delay_secs", 60.0))
        self._max_retries = int(rate_cfg.get("max_retries", 10))
        self._client_factory = client_factory or (
            lambda: HttpClient(settings.get("http"), rate_cfg)
        )

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def log_store(self) -> ExecutionLogStore:
        return self._log_store

    def run(self, request: ExecutionRequest) -> dict[str, Any]:
        """
        Start a crawl and return its acknowledgment:

        {
            "executionId":   str,
            "status":        "initialized",
            "method":        str,
            "url":           str,
            "maxIterations": int,
            "timestamp":     str
        }

        Raises ExecutionInitError when the parent record cannot be written
        or the crawl cannot be scheduled; nothing runs in that case.
        """
        execution_id = str(uuid.uuid4())
        record = ExecutionRecord(execution_id=execution_id, request=request)

        try:
            self._log_store.create_parent_record(record)
        except Exception as exc:
            log.error("Failed to initialise execution log for %s: %s", request.url, exc)
            raise ExecutionInitError(f"Failed to initialize execution logs: {exc}") from exc

        try:
            self._registry.submit(
                execution_id,
                lambda cancel_event: self.crawl(execution_id, request, cancel_event),
            )
        except Exception as exc:
            log.error("Failed to schedule crawl %s: %s", execution_id, exc)
            self._mark_terminal(execution_id, ExecutionStatus.ERROR, PaginationState(url=request.url))
            raise ExecutionInitError(f"Failed to schedule execution: {exc}", code="SCHEDULER_UNAVAILABLE") from exc

        log.info("Execution %s initialised: %s %s (max %d pages)",
                 execution_id, request.method, request.url, request.max_iterations)
        return {
            "executionId":   execution_id,
            "status":        ExecutionStatus.INITIALIZED,
            "method":        request.method,
            "url":           request.url,
            "maxIterations": request.max_iterations,
            "timestamp":     record.created_at,
        }

    def crawl(
        self,
        execution_id: str,
        request: ExecutionRequest,
        cancel_event: Optional[CancelEvent] = None,
    ) -> str:
        """
        Run the full crawl for an already-created parent record and return
        the terminal status. Never raises: faults end in `error`.
        """
        cancel_event = cancel_event or CancelEvent()
        state  = PaginationState(url=request.url)
        status = ExecutionStatus.ERROR
        client = None
        try:
            client = self._client_factory()
            self._log_store.update_parent_status(execution_id, ExecutionStatus.IN_PROGRESS, False)
            self._bus.emit(EventType.CRAWL_STARTED, execution_id,
                           method=request.method, url=request.url,
                           max_iterations=request.max_iterations)
            status = self._paginate(execution_id, request, state, client, cancel_event)
        except Exception as exc:
            log.exception("Background crawl %s failed", execution_id)
            if state.last_error is None:
                state.last_error = {"error": type(exc).__name__, "details": str(exc), "url": state.url}
            status = ExecutionStatus.ERROR
        finally:
            if client is not None:
                client.close()

        self._mark_terminal(execution_id, status, state)
        return status

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    def _paginate(
        self,
        execution_id: str,
        request: ExecutionRequest,
        state: PaginationState,
        client: Any,
        cancel_event: CancelEvent,
    ) -> str:
        body = request.body if request.sends_body else None

        while state.has_more_pages and state.page <= request.max_iterations:
            if cancel_event.is_set():
                return ExecutionStatus.CANCELLED

            url = merge_query_params(state.url, request.query_params) if state.page == 1 else state.url
            self._bus.emit(EventType.PAGE_STARTED, execution_id,
                           page=state.page, url=url, attempt=state.rate_limit_attempts + 1)

            response = client.request(request.method, url, request.headers, body)
            self._bus.emit(EventType.PAGE_FETCHED, execution_id,
                           page=state.page, status=response.status)

            if not response.ok:
                if not is_rate_limited(response):
                    state.last_error     = _error_info(response, url)
                    state.has_more_pages = False
                    self._bus.emit(EventType.PAGE_FAILED, execution_id,
                                   page=state.page, status=response.status, url=url)
                    return ExecutionStatus.ERROR

                if state.rate_limit_attempts >= self._max_retries:
                    state.last_error     = _error_info(response, url, reason="rate limit retries exhausted")
                    state.has_more_pages = False
                    self._bus.emit(EventType.PAGE_FAILED, execution_id,
                                   page=state.page, status=response.status, url=url,
                                   retries=state.rate_limit_attempts)
                    return ExecutionStatus.ERROR

                delay = self._backoff_delay(state.rate_limit_attempts, response.headers)
                state.rate_limit_attempts += 1
                self._bus.emit(EventType.PAGE_RETRIED, execution_id,
                               page=state.page, status=response.status,
                               attempt=state.rate_limit_attempts, delay_secs=delay)
                if cancel_event.wait(delay):
                    return ExecutionStatus.CANCELLED
                continue

            state.rate_limit_attempts = 0
            self._process_page(execution_id, request, state, url, response)

        return ExecutionStatus.COMPLETED

    def _process_page(
        self,
        execution_id: str,
        request: ExecutionRequest,
        state: PaginationState,
        url: str,
        response: HttpResponse,
    ) -> None:
        if state.style is None:
            state.style = detect_style(response.headers, response.body)
            self._bus.emit(EventType.STYLE_DETECTED, execution_id, style=state.style)

        items = extract_items(response.body)
        saved: list[str] = []
        if items and request.persist_items:
            if self._saver is None:
                log.warning("[%s] save requested for %s but no item sink is configured",
                            execution_id, request.table_name)
            else:
                saved = self._saver.save_page(items, request, url, response.status)
                self._bus.emit(EventType.ITEMS_SAVED, execution_id, page=state.page,
                               table=request.table_name, saved=len(saved), total=len(items))

        next_url = resolve_next(
            state.style, url, response.headers, response.body,
            request.query_params, request.url,
        )
        if next_url is not None and next_url == url:
            log.warning("[%s] next page resolves to the current URL, stopping", execution_id)
            next_url = None

        state.has_more_pages   = next_url is not None
        state.items_processed += len(items)
        is_last = not state.has_more_pages or state.page == request.max_iterations

        if items or is_last:
            child = ChildExecutionRecord(
                execution_id          = execution_id,
                child_execution_id    = str(uuid.uuid4()),
                page_number           = state.page,
                items_in_page         = len(items),
                total_items_processed = state.items_processed,
                request_url           = url,
                pagination_type       = state.style or PaginationStyle.NONE,
                response_status       = response.status,
                is_last               = is_last,
                item_ids              = tuple(item.item_id for item in items),
                items_saved           = len(saved),
            )
            self._log_store.append_child_record(child)
            self._bus.emit(EventType.CHILD_RECORDED, execution_id,
                           page=state.page, items=len(items), is_last=is_last)

        state.pages_processed += 1
        if next_url is not None:
            state.url = next_url
        state.page += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _backoff_delay(self, attempt: int, headers: Mapping[str, str]) -> float:
        retry_after = _retry_after(headers)
        if retry_after is not None:
            return min(retry_after, self._max_delay)
        return min(self._base_delay * (2 ** attempt), self._max_delay)

    def _mark_terminal(self, execution_id: str, status: str, state: PaginationState) -> None:
        try:
            self._log_store.update_parent_status(
                execution_id, status, True,
                total_items_processed = state.items_processed,
                pages_processed       = state.pages_processed,
                pagination_type       = state.style or PaginationStyle.NONE,
                last_error            = state.last_error,
            )
        except Exception:
            log.exception("Could not record terminal status %r for %s", status, execution_id)
        self._bus.emit(EventType.CRAWL_TERMINATED, execution_id,
                       status=status, pages=state.pages_processed,
                       items=state.items_processed, style=state.style or PaginationStyle.NONE)


def create_executor(settings: dict[str, Any], bus: Optional[EventBus] = None) -> PaginatedExecutor:
    """Wire an executor from settings: log store, item sink, registry, logging subscriber."""
    if bus is None:
        bus = EventBus()
        bus.subscribe(LoggingSubscriber())
    registry = TaskRegistry(max_workers=int(settings.get("tasks", {}).get("max_concurrent_crawls", 4)))
    return PaginatedExecutor(
        log_store = build_log_store(settings),
        registry  = registry,
        sink      = build_item_sink(settings),
        bus       = bus,
        settings  = settings,
    )
