import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util.retry import Retry

from pagetrail.models import BODYLESS_METHODS

log = logging.getLogger(__name__)


class TokenBucket:
    """
    Thread-safe token bucket for client-side request pacing.

    Allows up to `burst` tokens initially; refills at `rate` tokens/second.
    A rate of 0 (or below) disables pacing and consume() returns at once.
    """

    def __init__(self, rate: float, burst: int = 1) -> None:
        self._rate   = rate
        self._burst  = max(1, burst)
        self._tokens = float(self._burst)
        self._last   = time.monotonic()
        self._lock   = Lock()

    @property
    def enabled(self) -> bool:
        return self._rate > 0

    def consume(self) -> float:
        """Block until one token is available, consume it, return seconds waited."""
        if not self.enabled:
            return 0.0
        with self._lock:
            now     = time.monotonic()
            elapsed = now - self._last
            self._last   = now
            self._tokens = min(self._burst, self._tokens + elapsed * self._rate)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            wait = (1.0 - self._tokens) / self._rate

        time.sleep(wait)
        with self._lock:
            # The token that accrued while sleeping is the one being spent
            self._last   = time.monotonic()
            self._tokens = 0.0
        return wait


@dataclass
class HttpResponse:
    """Uniform view of one page response, whatever its status."""
    status:  int
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body:    Any                 = None
    reason:  str                 = ""

    @property
    def ok(self) -> bool:
        return self.status < 400


def _decode_body(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpClient:
    """
    HTTP client adapter for paginated crawls.

    Wraps a requests.Session with:
      - Connection-level retry via urllib3 Retry (never status-based, so
        4xx/5xx responses reach the orchestrator's retry policy untouched)
      - Optional request pacing via TokenBucket

    request() never raises on a non-2xx status; network failures
    (DNS, refused connection, timeout) still raise requests exceptions.

    One HttpClient is created per crawl. Instances are NOT shared across
    crawls, so pacing and connection pools stay per-target.
    """

    def __init__(self, http_cfg: Optional[dict[str, Any]] = None,
                 rate_cfg: Optional[dict[str, Any]] = None) -> None:
        http_cfg = http_cfg or {}
        rate_cfg = rate_cfg or {}
        self._timeout = float(http_cfg.get("timeout_secs", 30))
        self._session = requests.Session()
        self._configure_retry(int(http_cfg.get("connect_retries", 2)))
        self._bucket = TokenBucket(
            rate  = float(rate_cfg.get("requests_per_second", 0)),
            burst = int(rate_cfg.get("burst", 1)),
        )

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ) -> HttpResponse:
        """Issue one request and return status, headers and decoded body."""
        method = method.upper()
        kwargs: dict[str, Any] = {"headers": dict(headers or {}), "timeout": self._timeout}
        if body is not None and method not in BODYLESS_METHODS:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = body

        self._bucket.consume()
        log.debug("%s %s", method, url)
        response = self._session.request(method, url, **kwargs)
        return HttpResponse(
            status  = response.status_code,
            headers = CaseInsensitiveDict(response.headers),
            body    = _decode_body(response),
            reason  = response.reason or "",
        )

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def _configure_retry(self, connect_retries: int) -> None:
        retry = Retry(
            total           = connect_retries,
            connect         = connect_retries,
            read            = 0,
            status          = 0,
            backoff_factor  = 0.5,
            allowed_methods = None,
            raise_on_status = False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)
