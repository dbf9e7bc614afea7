"""
Tests for the shared retry policy and request throttle.
"""
import threading
from unittest.mock import Mock

import pytest
import requests

from catalog_ingest.errors import IngestCancelled, TransientNetworkError
from catalog_ingest.retry import (
    RequestThrottle,
    RetryPolicy,
    cancellable_sleep,
    parse_retry_after,
    request_with_retry,
)


class TestRetryPolicy:
    """Backoff schedule and retryable statuses."""

    def test_backoff_doubles(self):
        """Transient errors wait base * 2^(attempt-1)."""
        policy = RetryPolicy(max_attempts=5, base_delay=0.8)
        assert [policy.backoff(a) for a in (1, 2, 3)] == pytest.approx([0.8, 1.6, 3.2])

    def test_backoff_capped(self):
        policy = RetryPolicy(max_attempts=20, base_delay=1.0, max_delay=10.0)
        assert policy.backoff(10) == 10.0

    def test_retryable_statuses(self):
        """429 and 5xx retry; 4xx and success don't."""
        policy = RetryPolicy()
        assert policy.is_retryable_status(429)
        assert policy.is_retryable_status(500)
        assert policy.is_retryable_status(503)
        assert not policy.is_retryable_status(200)
        assert not policy.is_retryable_status(404)
        assert not policy.is_retryable_status(400)

    def test_rate_limit_delay_uses_retry_after(self, make_response):
        """Retry-After seconds are honored exactly."""
        policy = RetryPolicy(base_delay=0.8)
        response = make_response(429, headers={'Retry-After': '2'})
        assert policy.rate_limit_delay(1, response) == 2.0

    def test_rate_limit_delay_without_header(self, make_response):
        """Without Retry-After, 429 waits base * 2^attempt."""
        policy = RetryPolicy(base_delay=0.8)
        response = make_response(429)
        assert policy.rate_limit_delay(1, response) == pytest.approx(1.6)
        assert policy.rate_limit_delay(2, response) == pytest.approx(3.2)


class TestParseRetryAfter:

    def test_seconds(self):
        assert parse_retry_after('5') == 5.0

    def test_missing_or_blank(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after('  ') is None

    def test_garbage(self):
        assert parse_retry_after('soon') is None

    def test_past_http_date_is_zero(self):
        assert parse_retry_after('Wed, 21 Oct 2015 07:28:00 GMT') == 0.0


class TestRequestWithRetry:
    """The retry loop around a single HTTP call."""

    def test_success_first_try(self, make_response):
        """A 200 returns immediately without sleeping."""
        send = Mock(return_value=make_response(200, body={'ok': True}))
        sleep = Mock()

        response = request_with_retry(send, RetryPolicy(), label='GET x', sleep=sleep)

        assert response.status_code == 200
        assert send.call_count == 1
        sleep.assert_not_called()

    def test_retry_after_honored(self, make_response):
        """A 429 with Retry-After: 2 waits 2 seconds, then succeeds."""
        send = Mock(side_effect=[
            make_response(429, headers={'Retry-After': '2'}),
            make_response(200, body=[]),
        ])
        sleep = Mock()

        response = request_with_retry(send, RetryPolicy(), label='GET x', sleep=sleep)

        assert response.status_code == 200
        sleep.assert_called_once_with(2.0)

    def test_persistent_5xx_exhausts_attempts(self, make_response):
        """A persistent 503 makes exactly max_attempts calls, then raises."""
        send = Mock(return_value=make_response(503, text='unavailable'))
        sleep = Mock()
        policy = RetryPolicy(max_attempts=5, base_delay=0.8)

        with pytest.raises(TransientNetworkError, match='503'):
            request_with_retry(send, policy, label='GET x', sleep=sleep)

        assert send.call_count == 5
        delays = [c.args[0] for c in sleep.call_args_list]
        assert delays == pytest.approx([0.8, 1.6, 3.2, 6.4])

    def test_connection_error_retried(self, make_response):
        """Connection errors back off and retry."""
        send = Mock(side_effect=[
            requests.exceptions.ConnectionError('reset'),
            requests.exceptions.Timeout('slow'),
            make_response(200, body={}),
        ])
        sleep = Mock()

        response = request_with_retry(send, RetryPolicy(base_delay=1.0), label='GET x', sleep=sleep)

        assert response.status_code == 200
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_timeouts_exhaust_to_transient_error(self):
        send = Mock(side_effect=requests.exceptions.Timeout('slow'))

        with pytest.raises(TransientNetworkError):
            request_with_retry(send, RetryPolicy(max_attempts=3), label='GET x', sleep=Mock())

        assert send.call_count == 3

    def test_404_not_retried(self, make_response):
        """Non-retryable statuses are returned to the caller as-is."""
        send = Mock(return_value=make_response(404))
        sleep = Mock()

        response = request_with_retry(send, RetryPolicy(), label='GET x', sleep=sleep)

        assert response.status_code == 404
        assert send.call_count == 1
        sleep.assert_not_called()

    def test_throttle_acquired_every_attempt(self, make_response):
        """Each attempt, including retries, passes through the throttle."""
        send = Mock(side_effect=[make_response(500), make_response(200, body={})])
        throttle = Mock()

        request_with_retry(send, RetryPolicy(), label='GET x', sleep=Mock(), throttle=throttle)

        assert throttle.acquire.call_count == 2

    def test_should_stop_prevents_attempts(self):
        """No attempt starts once cancellation was requested."""
        send = Mock()

        with pytest.raises(IngestCancelled):
            request_with_retry(send, RetryPolicy(), label='GET x', sleep=Mock(),
                               should_stop=lambda: True)

        send.assert_not_called()


class TestRequestThrottle:
    """Minimum spacing between requests."""

    def test_first_call_does_not_wait(self):
        clock = Mock(return_value=100.0)
        sleep = Mock()
        throttle = RequestThrottle(0.25, sleep=sleep, clock=clock)

        assert throttle.acquire() == 0.0
        sleep.assert_not_called()

    def test_back_to_back_calls_spaced(self):
        """Calls at the same instant get consecutive slots."""
        clock = Mock(return_value=100.0)
        sleep = Mock()
        throttle = RequestThrottle(0.25, sleep=sleep, clock=clock)

        throttle.acquire()
        throttle.acquire()
        throttle.acquire()

        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.25, 0.5])

    def test_no_wait_after_interval_elapsed(self):
        times = iter([100.0, 101.0])
        sleep = Mock()
        throttle = RequestThrottle(0.25, sleep=sleep, clock=lambda: next(times))

        throttle.acquire()
        throttle.acquire()

        sleep.assert_not_called()

    def test_zero_interval_disabled(self):
        sleep = Mock()
        throttle = RequestThrottle(0, sleep=sleep)
        for _ in range(5):
            throttle.acquire()
        sleep.assert_not_called()


class TestCancellableSleep:

    def test_raises_when_cancelled(self):
        """A set event wakes the sleep and raises."""
        event = threading.Event()
        event.set()
        sleep = cancellable_sleep(event)

        with pytest.raises(IngestCancelled):
            sleep(30)

    def test_returns_when_not_cancelled(self):
        event = threading.Event()
        sleep = cancellable_sleep(event)
        sleep(0)
