"""
Retry transport for outbound HTTP requests.

Wraps a single request with bounded exponential backoff for transient
status codes (rate limits and server errors). Network-layer failures are
NOT retried here: they propagate to the caller, which knows how to
describe them to the user.
"""

import json
import logging
import random
import time
from collections.abc import Callable

import httpx

from devagent.config import RetryPolicy

logger = logging.getLogger(__name__)

MAX_JITTER = 0.3


def parse_retry_after(value: str | None) -> float | None:
    """Parse a numeric Retry-After header. HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: float | None = None,
    jitter: float | None = None,
) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    base * 2**attempt scaled by (1 + jitter), jitter in [0, 0.3], raised to
    the server's Retry-After hint when present, and capped at max_delay.
    """
    if jitter is None:
        jitter = random.uniform(0.0, MAX_JITTER)
    jitter = min(max(jitter, 0.0), MAX_JITTER)
    delay = policy.base_delay * (2 ** attempt) * (1.0 + jitter)
    if retry_after is not None:
        delay = max(delay, retry_after)
    return min(delay, policy.max_delay)


def send(
    client: httpx.Client,
    request: httpx.Request,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    """
    Send ``request`` and retry on retryable statuses.

    Returns the final response unmodified, whether it succeeded, failed with
    a non-retryable status, or exhausted the policy. httpx.RequestError is
    raised straight through.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    previous_delay = 0.0

    while True:
        response = client.send(request)
        if response.status_code not in policy.retryable_statuses or attempt + 1 >= policy.max_attempts:
            return response

        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        # Never shorter than the previous wait, even if the server hint shrinks.
        delay = max(previous_delay, compute_delay(attempt, policy, retry_after))
        previous_delay = delay
        logger.warning(
            f"Status {response.status_code}, retrying in {delay:.1f}s "
            f"(attempt {attempt + 2}/{policy.max_attempts})"
        )
        response.close()
        sleep(delay)
        attempt += 1


def parse_error_message(body: bytes | str | None, status_code: int) -> str:
    """Extract a user-readable message from an API error response."""
    if body:
        try:
            data = json.loads(body)
        except (ValueError, TypeError):
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
            if isinstance(error, str):
                return error

    if status_code == 429:
        return "Rate limit exceeded. Please wait a moment and try again."
    if status_code == 401:
        return "Invalid API key. Please check your API key."
    if status_code == 403:
        return "Access denied. Your API key may not have access to this model."
    if 500 <= status_code <= 599:
        return "API server error. Please try again in a few moments."
    return f"Request failed with status {status_code}."
