"""
Crawl loop tests: style handling end to end, retry policy, execution-log
state machine, cancellation and item persistence.

Run with:  pytest tests/ -v
"""
from threading import Event
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from pagetrail.errors import ExecutionInitError, LogStoreError
from pagetrail.events import EventType
from pagetrail.models import ExecutionRecord, ExecutionRequest, ExecutionStatus
from pagetrail.storage import MemoryExecutionLogStore, MemoryItemSink
from pagetrail.tasks import TaskState


def _param(url, key, default=None):
    return parse_qs(urlsplit(url).query).get(key, [default])[0]


def _run(executor, request):
    """Start a crawl and block until it finishes. Returns (execution_id, parent, children)."""
    ack = executor.run(request)
    execution_id = ack["executionId"]
    assert executor.registry.wait(execution_id, timeout=10)
    store = executor.log_store
    return execution_id, store.get_parent_record(execution_id), store.list_child_records(execution_id)


def _offset_handler(response, total, page_size=None):
    def handler(url, call):
        offset = int(_param(url, "offset", 0))
        limit  = int(_param(url, "limit", 10))
        count  = max(0, min(page_size or limit, total - offset))
        items  = [{"id": offset + i} for i in range(count)]
        return response(200, {"total_count": total, "data": items})
    return handler


# ---------------------------------------------------------------------------
# Acknowledgment and initialisation
# ---------------------------------------------------------------------------

class TestRun:
    def test_acknowledgment_shape(self, make_executor, response):
        executor, _ = make_executor(lambda url, n: response(200, []))
        request = ExecutionRequest(method="GET", url="https://api.example.com/x", max_iterations=3)
        ack = executor.run(request)
        assert ack["status"] == "initialized"
        assert ack["method"] == "GET"
        assert ack["url"] == "https://api.example.com/x"
        assert ack["maxIterations"] == 3
        assert ack["executionId"]
        assert ack["timestamp"]
        executor.registry.wait(ack["executionId"], timeout=10)

    def test_each_run_gets_its_own_execution_id(self, make_executor, response):
        executor, _ = make_executor(lambda url, n: response(200, []))
        request = ExecutionRequest(method="GET", url="https://api.example.com/x")
        first  = executor.run(request)["executionId"]
        second = executor.run(request)["executionId"]
        assert first != second
        executor.registry.wait(first, timeout=10)
        executor.registry.wait(second, timeout=10)

    def test_init_failure_raises_and_starts_nothing(self, make_executor, response):
        class _DownStore(MemoryExecutionLogStore):
            def create_parent_record(self, record):
                raise LogStoreError("store unavailable")

        executor, client = make_executor(lambda url, n: response(200, []), log_store=_DownStore())
        with pytest.raises(ExecutionInitError) as excinfo:
            executor.run(ExecutionRequest(method="GET", url="https://api.example.com/x"))
        assert "store unavailable" in str(excinfo.value)
        assert executor.registry.list() == []
        assert client.calls == []

    def test_task_registered_and_finished(self, make_executor, response):
        executor, _ = make_executor(lambda url, n: response(200, {"id": 1}))
        execution_id, parent, _ = _run(executor, ExecutionRequest(method="GET", url="https://a.example/x"))
        task = executor.registry.get(execution_id)
        assert task is not None
        assert task.state == TaskState.FINISHED
        assert parent.status == ExecutionStatus.COMPLETED


# ---------------------------------------------------------------------------
# Pagination styles end to end
# ---------------------------------------------------------------------------

class TestOffsetCrawl:
    def test_total_count_five_limit_two_gives_three_pages(self, make_executor, response):
        executor, client = make_executor(_offset_handler(response, total=5))
        request = ExecutionRequest(method="GET", url="https://api.example.com/items?limit=2", max_iterations=5)
        _, parent, children = _run(executor, request)

        assert [_param(u, "offset", "0") for u in client.urls] == ["0", "2", "4"]
        assert len(children) == 3
        assert [c.page_number for c in children] == [1, 2, 3]
        assert [c.is_last for c in children] == [False, False, True]
        assert all(c.pagination_type == "offset" for c in children)
        assert parent.status == ExecutionStatus.COMPLETED
        assert parent.is_last is True
        assert parent.total_items_processed == 5
        assert parent.pages_processed == 3

    def test_total_twenty_five_limit_ten(self, make_executor, response):
        executor, client = make_executor(_offset_handler(response, total=25))
        request = ExecutionRequest(method="GET", url="https://api.example.com/items",
                                   query_params={"limit": "10"})
        _, parent, children = _run(executor, request)
        assert [_param(u, "offset", "0") for u in client.urls] == ["0", "10", "20"]
        assert len(children) == 3
        assert children[-1].total_items_processed == 25

    def test_cumulative_item_counts(self, make_executor, response):
        executor, _ = make_executor(_offset_handler(response, total=5))
        request = ExecutionRequest(method="GET", url="https://api.example.com/items?limit=2")
        _, _, children = _run(executor, request)
        assert [c.items_in_page for c in children] == [2, 2, 1]
        assert [c.total_items_processed for c in children] == [2, 4, 5]
        assert children[0].item_ids == ("0", "1")


class TestBookmarkCrawl:
    def test_style_fixed_after_first_page(self, make_executor, response):
        pages = {
            1: {"bookmark": "bm-2", "items": [{"id": "a"}]},
            # Looks like cursor/offset pagination, but the crawl is bookmark style
            2: {"next_cursor": "c-9", "total": 100, "items": [{"id": "b"}]},
        }
        executor, client = make_executor(lambda url, n: response(200, pages[n]))
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://p.example/pins"))

        assert len(client.calls) == 2
        assert _param(client.urls[1], "bookmark") == "bm-2"
        assert [c.pagination_type for c in children] == ["bookmark", "bookmark"]
        assert children[-1].is_last is True
        assert parent.pagination_type == "bookmark"
        assert parent.status == ExecutionStatus.COMPLETED


class TestCursorCrawl:
    def test_follows_cursor_until_absent(self, make_executor, response):
        pages = {
            1: {"next_cursor": "c2", "data": [{"id": 1}]},
            2: {"next_cursor": "c3", "data": [{"id": 2}]},
            3: {"data": [{"id": 3}]},
        }
        executor, client = make_executor(lambda url, n: response(200, pages[n]))
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://c.example/list"))
        assert [_param(u, "cursor") for u in client.urls] == [None, "c2", "c3"]
        assert len(children) == 3
        assert parent.status == ExecutionStatus.COMPLETED

    def test_repeated_cursor_stops_crawl(self, make_executor, response):
        executor, client = make_executor(
            lambda url, n: response(200, {"cursor": "same", "data": [{"id": n}]})
        )
        request = ExecutionRequest(method="GET", url="https://c.example/list", max_iterations=10)
        _, parent, children = _run(executor, request)
        assert len(client.calls) == 2
        assert children[-1].is_last is True
        assert parent.status == ExecutionStatus.COMPLETED

    def test_max_iterations_one_yields_single_child(self, make_executor, response):
        executor, client = make_executor(
            lambda url, n: response(200, {"next_cursor": f"c{n + 1}", "data": [{"id": n}]})
        )
        request = ExecutionRequest(method="GET", url="https://c.example/list", max_iterations=1)
        _, parent, children = _run(executor, request)
        assert len(client.calls) == 1
        assert len(children) == 1
        assert children[0].is_last is True
        assert parent.is_last is True
        assert parent.status == ExecutionStatus.COMPLETED


class TestLinkCrawl:
    def test_follows_link_header_and_carries_limit(self, make_executor, response):
        def handler(url, n):
            if n == 1:
                return response(
                    200, {"orders": [{"order_id": 11}]},
                    {"Link": '<https://shop.example/orders?page_info=p2&status=any>; rel="next"'},
                )
            return response(200, {"orders": [{"order_id": 12}]})

        executor, client = make_executor(handler)
        request = ExecutionRequest(method="GET", url="https://shop.example/orders",
                                   query_params={"limit": "50", "status": "any"})
        _, _, children = _run(executor, request)

        assert client.urls[0] == "https://shop.example/orders?limit=50&status=any"
        assert client.urls[1] == "https://shop.example/orders?page_info=p2&limit=50"
        assert [c.item_ids for c in children] == [("11",), ("12",)]


class TestSinglePage:
    def test_no_pagination_fetches_once(self, make_executor, response):
        executor, client = make_executor(lambda url, n: response(200, [{"id": 1}, {"id": 2}]))
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://s.example/all"))
        assert len(client.calls) == 1
        assert len(children) == 1
        assert children[0].pagination_type == "none"
        assert parent.status == ExecutionStatus.COMPLETED

    def test_query_params_merged_only_when_absent(self, make_executor, response):
        executor, client = make_executor(lambda url, n: response(200, {"id": 1}))
        request = ExecutionRequest(method="GET", url="https://s.example/all?limit=5",
                                   query_params={"limit": "99", "sort": "asc", "empty": ""})
        _run(executor, request)
        assert client.urls == ["https://s.example/all?limit=5&sort=asc"]

    def test_body_sent_for_post_only(self, make_executor, response):
        executor, client = make_executor(lambda url, n: response(200, {"id": 1}))
        _run(executor, ExecutionRequest(method="POST", url="https://s.example/q", body={"q": 1}))
        _run(executor, ExecutionRequest(method="GET", url="https://s.example/q", body={"q": 1}))
        assert client.calls[0]["body"] == {"q": 1}
        assert client.calls[1]["body"] is None


class TestChildRecordRules:
    def test_empty_intermediate_page_writes_no_child(self, make_executor, response):
        pages = {
            1: {"next_cursor": "c2", "data": [{"id": 1}]},
            2: {"next_cursor": "c3", "data": []},
            3: {"data": [{"id": 3}]},
        }
        executor, _ = make_executor(lambda url, n: response(200, pages[n]))
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://c.example/l"))
        assert [c.page_number for c in children] == [1, 3]
        assert parent.pages_processed == 3

    def test_empty_final_page_is_recorded(self, make_executor, response):
        pages = {
            1: {"next_cursor": "c2", "data": [{"id": 1}]},
            2: {"data": []},
        }
        executor, _ = make_executor(lambda url, n: response(200, pages[n]))
        _, _, children = _run(executor, ExecutionRequest(method="GET", url="https://c.example/l"))
        assert len(children) == 2
        assert children[1].items_in_page == 0
        assert children[1].is_last is True


# ---------------------------------------------------------------------------
# Retry / error policy
# ---------------------------------------------------------------------------

class TestRateLimitRetry:
    def test_429_retried_against_same_url(self, make_executor, response):
        def handler(url, n):
            if n == 1:
                return response(429, {"errors": "Too many requests"})
            return response(200, [{"id": 1}])

        executor, client = make_executor(handler)
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://r.example/x"))
        assert len(client.calls) == 2
        assert client.urls[0] == client.urls[1]
        assert len(children) == 1
        assert children[0].page_number == 1
        assert children[0].response_status == 200
        assert parent.status == ExecutionStatus.COMPLETED

    @pytest.mark.parametrize("errors", [
        "Exceeded 2 calls per second for api client. Reduce request rates to resume uninterrupted service. rate limit",
        ["Rate limit exceeded"],
    ])
    def test_errors_field_mentioning_rate_limit_is_retried(self, make_executor, response, errors):
        def handler(url, n):
            if n == 1:
                return response(400, {"errors": errors})
            return response(200, [{"id": 1}])

        executor, client = make_executor(handler)
        _, parent, _ = _run(executor, ExecutionRequest(method="GET", url="https://r.example/x"))
        assert len(client.calls) == 2
        assert parent.status == ExecutionStatus.COMPLETED

    def test_retry_ceiling_ends_in_error(self, make_executor, response):
        executor, client = make_executor(
            lambda url, n: response(429, None),
            settings={"rate_limit": {"max_retries": 2}},
        )
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://r.example/x"))
        assert len(client.calls) == 3
        assert children == []
        assert parent.status == ExecutionStatus.ERROR
        assert parent.is_last is True
        assert parent.last_error["status"] == 429

    def test_backoff_delay_is_capped_exponential(self, make_executor, response):
        executor, _ = make_executor(
            lambda url, n: response(200, []),
            settings={"rate_limit": {"retry_base_delay_secs": 5, "retry_max_delay_secs": 60}},
        )
        delays = [executor._backoff_delay(attempt, {}) for attempt in range(6)]
        assert delays == [5, 10, 20, 40, 60, 60]
        assert executor._backoff_delay(0, {"Retry-After": "7"}) == 7
        assert executor._backoff_delay(0, {"Retry-After": "600"}) == 60


class TestTerminalErrors:
    def test_non_retryable_status_stops_without_child(self, make_executor, response):
        def handler(url, n):
            if n == 1:
                return response(200, {"next_cursor": "c2", "data": [{"id": 1}]})
            return response(500, {"message": "boom"})

        executor, client = make_executor(handler)
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://e.example/x"))
        assert len(client.calls) == 2
        assert len(children) == 1
        assert children[0].is_last is False
        assert parent.status == ExecutionStatus.ERROR
        assert parent.is_last is True
        assert parent.last_error["status"] == 500
        assert parent.last_error["url"] == client.urls[1]
        assert parent.last_error["body"] == {"message": "boom"}

    def test_network_fault_marks_error(self, make_executor, response):
        def handler(url, n):
            raise requests.ConnectionError("connection refused")

        executor, client = make_executor(handler)
        _, parent, children = _run(executor, ExecutionRequest(method="GET", url="https://e.example/x"))
        assert parent.status == ExecutionStatus.ERROR
        assert parent.is_last is True
        assert parent.last_error["error"] == "ConnectionError"
        assert children == []
        assert client.closed is True

    def test_child_write_failure_marks_error(self, make_executor, response):
        class _FlakyStore(MemoryExecutionLogStore):
            def append_child_record(self, record):
                raise LogStoreError("disk full")

        store = _FlakyStore()
        executor, _ = make_executor(lambda url, n: response(200, [{"id": 1}]), log_store=store)
        execution_id, parent, _ = _run(executor, ExecutionRequest(method="GET", url="https://e.example/x"))
        assert parent.status == ExecutionStatus.ERROR
        assert "disk full" in parent.last_error["details"]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    def _create(self, executor, request):
        record = ExecutionRecord(execution_id="exec-1", request=request)
        executor.log_store.create_parent_record(record)
        return record.execution_id

    def test_cancel_before_first_page(self, make_executor, response):
        executor, client = make_executor(lambda url, n: response(200, [{"id": 1}]))
        request = ExecutionRequest(method="GET", url="https://k.example/x")
        execution_id = self._create(executor, request)
        cancel = Event()
        cancel.set()

        assert executor.crawl(execution_id, request, cancel) == ExecutionStatus.CANCELLED
        parent = executor.log_store.get_parent_record(execution_id)
        assert parent.status == ExecutionStatus.CANCELLED
        assert parent.is_last is True
        assert client.calls == []

    def test_cancel_between_pages(self, make_executor, response):
        cancel = Event()

        def handler(url, n):
            if n == 2:
                cancel.set()
            return response(200, {"next_cursor": f"c{n + 1}", "data": [{"id": n}]})

        executor, client = make_executor(handler)
        request = ExecutionRequest(method="GET", url="https://k.example/x")
        execution_id = self._create(executor, request)

        assert executor.crawl(execution_id, request, cancel) == ExecutionStatus.CANCELLED
        assert len(client.calls) == 2
        assert len(executor.log_store.list_child_records(execution_id)) == 2

    def test_cancel_interrupts_backoff(self, make_executor, response):
        cancel = Event()

        def handler(url, n):
            cancel.set()
            return response(429, None)

        executor, client = make_executor(
            handler, settings={"rate_limit": {"retry_base_delay_secs": 30, "retry_max_delay_secs": 30}},
        )
        request = ExecutionRequest(method="GET", url="https://k.example/x")
        execution_id = self._create(executor, request)

        assert executor.crawl(execution_id, request, cancel) == ExecutionStatus.CANCELLED
        assert len(client.calls) == 1


# ---------------------------------------------------------------------------
# Item persistence
# ---------------------------------------------------------------------------

class TestItemPersistence:
    def test_items_saved_when_enabled(self, make_executor, response, sink):
        items = [{"id": i, "url": f"https://x/{i}", "bookmark": "b"} for i in range(7)]
        executor, _ = make_executor(lambda url, n: response(200, {"data": items}))
        request = ExecutionRequest(method="GET", url="https://i.example/x", table_name="pins", save_data=True)
        _, _, children = _run(executor, request)

        assert children[0].items_saved == 7
        stored = sink.get("pins", "3")
        assert stored["item"] == {"id": "3"}
        assert stored["metadata"]["item_index"] == 3
        assert stored["metadata"]["total_items"] == 7
        assert stored["metadata"]["original_id"] == 3
        assert stored["metadata"]["response_status"] == 200

    def test_items_not_saved_without_flag(self, make_executor, response, sink):
        executor, _ = make_executor(lambda url, n: response(200, [{"id": 1}]))
        request = ExecutionRequest(method="GET", url="https://i.example/x", table_name="pins")
        _, _, children = _run(executor, request)
        assert children[0].items_saved == 0
        assert sink.tables == {}

    def test_failed_save_does_not_fail_crawl(self, make_executor, response):
        class _PickySink(MemoryItemSink):
            def put(self, table_name, record):
                if record["id"] == "2":
                    raise OSError("write refused")
                super().put(table_name, record)

        picky = _PickySink()
        executor, _ = make_executor(lambda url, n: response(200, [{"id": i} for i in range(4)]), sink=picky)
        request = ExecutionRequest(method="GET", url="https://i.example/x", table_name="t", save_data=True)
        _, parent, children = _run(executor, request)

        assert parent.status == ExecutionStatus.COMPLETED
        assert children[0].items_saved == 3
        assert children[0].item_ids == ("0", "1", "2", "3")
        assert sorted(picky.tables["t"]) == ["0", "1", "3"]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestEvents:
    def test_lifecycle_events_emitted(self, make_executor, response, bus):
        seen = []
        bus.subscribe(lambda e: seen.append(e.event_type))

        def handler(url, n):
            if n == 1:
                return response(429, None)
            return response(200, [{"id": 1}])

        executor, _ = make_executor(handler)
        _run(executor, ExecutionRequest(method="GET", url="https://v.example/x"))

        assert seen[0] == EventType.CRAWL_STARTED
        assert seen[-1] == EventType.CRAWL_TERMINATED
        assert EventType.PAGE_RETRIED in seen
        assert seen.count(EventType.STYLE_DETECTED) == 1
        assert EventType.CHILD_RECORDED in seen
