"""
HTTP retry with exponential backoff, plus a shared request throttle.

Every outbound call (token exchange, catalog discovery, detail fetch) goes
through request_with_retry() so the attempt budget, backoff and rate-limit
courtesy waits are identical everywhere.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import requests

from .errors import IngestCancelled, TransientNetworkError


logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 60.0  # Cap for computed exponential backoff

RETRYABLE_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)

Sleeper = Callable[[float], None]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("2") and HTTP dates. Returns None when absent or
    unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule shared by all outbound calls."""

    max_attempts: int = 5
    base_delay: float = 0.8
    max_delay: float = MAX_RETRY_DELAY

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(max_attempts=settings.max_retries, base_delay=settings.retry_base_delay)

    def is_retryable_status(self, status: int) -> bool:
        """429 and 5xx are retried; every other status is final."""
        return status == 429 or 500 <= status < 600

    def backoff(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based): base * 2^(attempt-1)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def rate_limit_delay(self, attempt: int, response: requests.Response) -> float:
        """Delay after a 429: Retry-After when given, else base * 2^attempt."""
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if retry_after is not None:
            return retry_after
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def cancellable_sleep(cancel_event: Optional[threading.Event]) -> Sleeper:
    """Return a sleep function that wakes early and raises once cancel_event is set."""
    if cancel_event is None:
        return time.sleep

    def _sleep(seconds: float) -> None:
        if cancel_event.wait(seconds):
            raise IngestCancelled("Cancellation requested")

    return _sleep


class RequestThrottle:
    """
    Minimum spacing between outbound requests, shared by all workers.

    Each acquire() reserves the next free slot under a lock, so the aggregate
    request rate never exceeds 1/min_interval however many threads call it.
    """

    def __init__(self, min_interval: float, sleep: Sleeper = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> float:
        """Block until this caller's slot arrives. Returns the time waited."""
        if self.min_interval <= 0:
            return 0.0
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        wait = slot - now
        if wait > 0:
            self._sleep(wait)
        return wait


def request_with_retry(
    send: Callable[[], requests.Response],
    policy: RetryPolicy,
    *,
    label: str,
    sleep: Sleeper = time.sleep,
    throttle: Optional[RequestThrottle] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> requests.Response:
    """
    Run an HTTP call with the shared retry policy.

    Args:
        send: Zero-argument callable performing one attempt
        policy: Attempt budget and backoff schedule
        label: Human-readable description for log lines ("GET product/12/en_us")
        sleep: Sleep function (injectable for tests and cancellation)
        throttle: Shared throttle acquired before every attempt
        should_stop: Returns True once no further attempts may start

    Returns:
        The first response whose status is not retryable (including 404 and
        other 4xx; interpreting those is the caller's job).

    Raises:
        TransientNetworkError: every attempt timed out, failed to connect, or
            returned 429/5xx
        IngestCancelled: cancellation was requested between attempts
    """
    last_error = ""
    for attempt in range(1, policy.max_attempts + 1):
        if should_stop is not None and should_stop():
            raise IngestCancelled(f"{label}: cancelled before attempt {attempt}")
        if throttle is not None:
            throttle.acquire()

        try:
            response = send()
        except RETRYABLE_EXCEPTIONS as e:
            last_error = str(e)
            if attempt >= policy.max_attempts:
                raise TransientNetworkError(
                    f"{label} failed after {attempt} attempts: {e}"
                ) from e
            delay = policy.backoff(attempt)
            logger.warning("Request error for %s: %s. Retrying in %.1fs (%d/%d)",
                           label, e, delay, attempt, policy.max_attempts)
            sleep(delay)
            continue

        status = response.status_code
        if not policy.is_retryable_status(status):
            return response

        last_error = f"HTTP {status}"
        if attempt >= policy.max_attempts:
            raise TransientNetworkError(
                f"{label} failed with HTTP {status} after {attempt} attempts"
            )
        if status == 429:
            delay = policy.rate_limit_delay(attempt, response)
            logger.warning("Rate limited on %s, waiting %.1fs (%d/%d)",
                           label, delay, attempt, policy.max_attempts)
        else:
            delay = policy.backoff(attempt)
            logger.warning("Transient %d from %s, retrying in %.1fs (%d/%d)",
                           status, label, delay, attempt, policy.max_attempts)
        sleep(delay)

    raise TransientNetworkError(f"{label} exhausted retries: {last_error}")
