"""
Tests for the retry transport.

HTTP traffic is served by httpx.MockTransport and sleeps are recorded
instead of taken.
"""

import httpx
import pytest

from devagent.config import RetryPolicy
from devagent.retry import compute_delay, parse_error_message, parse_retry_after, send


def make_client(statuses, headers=None):
    """Client whose transport answers with ``statuses`` in order."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[min(len(calls), len(statuses) - 1)]
        calls.append(request)
        return httpx.Response(status, headers=headers or {}, json={"ok": status == 200})

    return httpx.Client(transport=httpx.MockTransport(handler)), calls


class TestComputeDelay:
    """Tests for backoff delay computation."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert [compute_delay(a, policy, jitter=0.0) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert compute_delay(10, policy, jitter=0.3) == 5.0

    def test_jitter_is_clamped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert compute_delay(0, policy, jitter=5.0) == pytest.approx(1.3)

    def test_retry_after_raises_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert compute_delay(0, policy, retry_after=7.0, jitter=0.0) == 7.0

    def test_retry_after_still_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert compute_delay(0, policy, retry_after=120.0, jitter=0.0) == 30.0

    def test_random_jitter_within_bounds(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=100.0)
        for _ in range(50):
            assert 2.0 <= compute_delay(0, policy) <= 2.6


class TestSend:
    """Tests for send()."""

    def test_success_is_not_retried(self):
        client, calls = make_client([200])
        sleeps = []
        response = send(client, client.build_request("GET", "https://api.test/x"), sleep=sleeps.append)
        assert response.status_code == 200
        assert len(calls) == 1
        assert sleeps == []

    def test_retries_then_succeeds(self):
        client, calls = make_client([503, 429, 200])
        sleeps = []
        response = send(
            client,
            client.build_request("GET", "https://api.test/x"),
            RetryPolicy(max_attempts=3),
            sleep=sleeps.append,
        )
        assert response.status_code == 200
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_stops_after_max_attempts(self):
        """After max_attempts retryable failures the last response is returned."""
        client, calls = make_client([500])
        sleeps = []
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=3.0)
        response = send(client, client.build_request("GET", "https://api.test/x"), policy, sleep=sleeps.append)
        assert response.status_code == 500
        assert len(calls) == 3
        assert len(sleeps) == 2
        assert sleeps == sorted(sleeps)
        assert all(delay <= policy.max_delay for delay in sleeps)

    def test_single_attempt_never_sleeps(self):
        client, calls = make_client([503])
        sleeps = []
        response = send(
            client,
            client.build_request("GET", "https://api.test/x"),
            RetryPolicy(max_attempts=1),
            sleep=sleeps.append,
        )
        assert response.status_code == 503
        assert len(calls) == 1
        assert sleeps == []

    def test_non_retryable_status_returned(self):
        client, calls = make_client([400])
        response = send(client, client.build_request("GET", "https://api.test/x"), sleep=lambda _: None)
        assert response.status_code == 400
        assert len(calls) == 1

    def test_shrinking_retry_after_never_shortens_delay(self):
        """Delays stay non-decreasing even when the server hint drops."""
        hints = iter(["10", "0"])

        def handler(request: httpx.Request) -> httpx.Response:
            hint = next(hints, None)
            if hint is None:
                return httpx.Response(200)
            return httpx.Response(429, headers={"Retry-After": hint})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sleeps = []
        send(client, client.build_request("GET", "https://api.test/x"), sleep=sleeps.append)
        assert len(sleeps) == 2
        assert sleeps[1] >= sleeps[0] >= 10.0

    def test_network_error_propagates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sleeps = []
        with pytest.raises(httpx.ConnectError):
            send(client, client.build_request("GET", "https://api.test/x"), sleep=sleeps.append)
        assert sleeps == []


class TestParsing:
    """Tests for header and error body parsing."""

    def test_parse_retry_after(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after("-1") is None

    def test_error_message_from_body(self):
        body = b'{"error": {"message": "Model not found: grok-x"}}'
        assert parse_error_message(body, 400) == "Model not found: grok-x"

    def test_error_string_from_body(self):
        assert parse_error_message('{"error": "bad key"}', 401) == "bad key"

    def test_fallback_messages(self):
        assert parse_error_message(b"", 429).startswith("Rate limit exceeded")
        assert parse_error_message(b"<html>", 502).startswith("API server error")
        assert parse_error_message(None, 418) == "Request failed with status 418."
