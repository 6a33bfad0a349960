"""
Crawl event bus.

The orchestrator publishes structured Events as a crawl advances; it never
formats log text itself. Subscribers register a callable per EventType (or
None for every event). Dispatch is synchronous: handlers run on the crawl's
own worker thread, in subscription order, and a failing handler is logged
and skipped.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional

from pagetrail.models import utc_now

log = logging.getLogger(__name__)


class EventType(Enum):
    CRAWL_STARTED      = "crawl_started"
    STYLE_DETECTED     = "style_detected"
    PAGE_STARTED       = "page_started"
    PAGE_FETCHED       = "page_fetched"
    PAGE_RETRIED       = "page_retried"
    PAGE_FAILED        = "page_failed"
    ITEMS_SAVED        = "items_saved"
    CHILD_RECORDED     = "child_recorded"
    CRAWL_TERMINATED   = "crawl_terminated"


@dataclass
class Event:
    event_type:   EventType
    execution_id: str
    data:         dict[str, Any] = field(default_factory=dict)
    timestamp:    str            = field(default_factory=utc_now)
    event_id:     str            = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id":     self.event_id,
            "event_type":   self.event_type.value,
            "execution_id": self.execution_id,
            "timestamp":    self.timestamp,
            "data":         self.data,
        }


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[Optional[EventType], list[Handler]] = defaultdict(list)
        self._lock = Lock()

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = (
                list(self._subscribers.get(event.event_type, []))
                + list(self._subscribers.get(None, []))
            )
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                log.error("EventBus handler error [%s]: %s",
                          getattr(handler, "__name__", handler), exc)

    def emit(self, event_type: EventType, execution_id: str, **data: Any) -> Event:
        event = Event(event_type=event_type, execution_id=execution_id, data=data)
        self.publish(event)
        return event

    def subscribe(self, handler: Handler, event_type: Optional[EventType] = None) -> None:
        """Subscribe to a specific EventType, or None to receive all events."""
        with self._lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, handler: Handler, event_type: Optional[EventType] = None) -> None:
        with self._lock:
            try:
                self._subscribers[event_type].remove(handler)
            except ValueError:
                pass


class LoggingSubscriber:
    """Renders crawl events as log lines. Attach with bus.subscribe(sub)."""

    _LEVELS = {
        EventType.PAGE_RETRIED:     logging.WARNING,
        EventType.PAGE_FAILED:      logging.ERROR,
        EventType.PAGE_STARTED:     logging.DEBUG,
        EventType.PAGE_FETCHED:     logging.DEBUG,
        EventType.CHILD_RECORDED:   logging.DEBUG,
    }

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or logging.getLogger("pagetrail.crawl")

    def __call__(self, event: Event) -> None:
        level = self._LEVELS.get(event.event_type, logging.INFO)
        if not self._log.isEnabledFor(level):
            return
        self._log.log(level, "[%s] %s %s",
                      event.execution_id, event.event_type.value, self._format(event.data))

    @staticmethod
    def _format(data: dict[str, Any]) -> str:
        return " ".join(f"{k}={v}" for k, v in data.items())
