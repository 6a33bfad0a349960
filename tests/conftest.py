"""
Shared fixtures: scripted HTTP client, in-memory stores, executor factory.
"""
from typing import Any, Callable, Optional

import pytest
from requests.structures import CaseInsensitiveDict

from pagetrail.events import EventBus
from pagetrail.fetcher import HttpResponse
from pagetrail.orchestrator import PaginatedExecutor
from pagetrail.storage import MemoryExecutionLogStore, MemoryItemSink
from pagetrail.tasks import TaskRegistry

FAST_SETTINGS = {
    "rate_limit": {
        "retry_base_delay_secs": 0,
        "retry_max_delay_secs":  0,
        "max_retries":           10,
    },
    "save": {"batch_size": 5},
}


def make_response(status: int = 200, body: Any = None, headers: Optional[dict] = None) -> HttpResponse:
    return HttpResponse(status=status, headers=CaseInsensitiveDict(headers or {}), body=body)


class FakeHttpClient:
    """
    Stands in for HttpClient. handler(url, call_number) returns the
    HttpResponse for each request (or raises); every call is recorded.
    """

    def __init__(self, handler: Callable[[str, int], HttpResponse]) -> None:
        self._handler = handler
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, headers=None, body=None) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "body": body})
        return self._handler(url, len(self.calls))

    @property
    def urls(self) -> list[str]:
        return [c["url"] for c in self.calls]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def response():
    return make_response


@pytest.fixture
def log_store():
    return MemoryExecutionLogStore()


@pytest.fixture
def sink():
    return MemoryItemSink()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry():
    reg = TaskRegistry(max_workers=2)
    yield reg
    reg.shutdown(wait=True, cancel_running=True)


@pytest.fixture
def make_executor(log_store, sink, bus, registry):
    """
    Build (executor, client) for a scripted handler. Extra settings are
    merged section by section over FAST_SETTINGS.
    """
    def _make(handler, settings: Optional[dict] = None, **overrides):
        merged = {k: dict(v) for k, v in FAST_SETTINGS.items()}
        for section, values in (settings or {}).items():
            merged.setdefault(section, {}).update(values)
        client = FakeHttpClient(handler)
        executor = PaginatedExecutor(
            log_store      = overrides.get("log_store", log_store),
            registry       = registry,
            sink           = overrides.get("sink", sink),
            bus            = bus,
            settings       = merged,
            client_factory = lambda: client,
        )
        return executor, client
    return _make
