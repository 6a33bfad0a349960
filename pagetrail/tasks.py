import logging
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any, Callable, Optional

from pagetrail.models import utc_now

log = logging.getLogger(__name__)


class TaskState:
    PENDING  = "pending"
    RUNNING  = "running"
    FINISHED = "finished"


@dataclass
class CrawlTask:
    """
    Background crawl keyed by execution id.

    cancel_event is shared with the running crawl, which checks it between
    pages and while backing off. Setting it does not interrupt an HTTP
    request already in flight.
    """
    execution_id: str
    state:        str             = TaskState.PENDING
    cancel_event: Event           = field(default_factory=Event)
    future:       Optional[Future] = None
    submitted_at: str             = field(default_factory=utc_now)
    started_at:   Optional[str]   = None
    finished_at:  Optional[str]   = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id":     self.execution_id,
            "state":            self.state,
            "cancel_requested": self.cancel_requested,
            "submitted_at":     self.submitted_at,
            "started_at":       self.started_at,
            "finished_at":      self.finished_at,
        }


class TaskRegistry:
    """
    Process-wide registry of background crawls.

    Runs each crawl on a ThreadPoolExecutor worker and tracks it through
    pending -> running -> finished. Finished tasks are kept for inspection
    up to `keep_finished` entries, oldest evicted first.
    """

    def __init__(self, max_workers: int = 4, keep_finished: int = 1000) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="pagetrail-crawl",
        )
        self._tasks: "OrderedDict[str, CrawlTask]" = OrderedDict()
        self._keep_finished = keep_finished
        self._lock = Lock()

    def submit(self, execution_id: str, fn: Callable[[Event], Any]) -> CrawlTask:
        """Schedule fn(cancel_event) as the crawl for execution_id."""
        task = CrawlTask(execution_id=execution_id)
        with self._lock:
            if execution_id in self._tasks:
                raise ValueError(f"Task {execution_id} already registered")
            self._tasks[execution_id] = task
        try:
            task.future = self._executor.submit(self._run, task, fn)
        except Exception:
            with self._lock:
                self._tasks.pop(execution_id, None)
            raise
        return task

    def get(self, execution_id: str) -> Optional[CrawlTask]:
        with self._lock:
            return self._tasks.get(execution_id)

    def list(self) -> list[CrawlTask]:
        with self._lock:
            return list(self._tasks.values())

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation. Returns False for unknown or finished tasks.

        A task that has not started yet still runs its crawl function, which
        sees the event and records the cancellation straight away.
        """
        task = self.get(execution_id)
        if task is None or task.state == TaskState.FINISHED:
            return False
        task.cancel_event.set()
        log.info("Cancellation requested for %s", execution_id)
        return True

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the task finishes. Returns False on timeout or unknown id."""
        task = self.get(execution_id)
        if task is None or task.future is None:
            return False
        try:
            task.future.result(timeout=timeout)
        except FutureTimeout:
            return False
        except Exception as exc:
            # Faults are recorded in the execution log by the crawl itself
            log.debug("Task %s ended with %r", execution_id, exc)
        return True

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            for task in self.list():
                task.cancel_event.set()
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, task: CrawlTask, fn: Callable[[Event], Any]) -> Any:
        task.state      = TaskState.RUNNING
        task.started_at = utc_now()
        try:
            return fn(task.cancel_event)
        finally:
            task.state       = TaskState.FINISHED
            task.finished_at = utc_now()
            self._evict_finished()

    def _evict_finished(self) -> None:
        with self._lock:
            finished = [k for k, t in self._tasks.items() if t.state == TaskState.FINISHED]
            for key in finished[:max(0, len(finished) - self._keep_finished)]:
                del self._tasks[key]
