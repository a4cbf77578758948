"""
LLM Client - chat completions and model catalog over httpx.

Works with any OpenAI-compatible endpoint (xAI by default). Transient
HTTP statuses are retried by the retry transport; everything else is
turned into a typed LLMError so the turn loop can tell the user what went
wrong without inspecting httpx internals.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from devagent import retry
from devagent.config import LLMConfig, RetryPolicy
from devagent.types import Usage

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0


class LLMError(Exception):
    """Error from the LLM client."""
    pass


class LLMNetworkError(LLMError):
    """
    The request never produced an HTTP response.

    kind is one of "timeout", "unreachable" or "other".
    """

    def __init__(self, message: str, kind: str = "other") -> None:
        super().__init__(message)
        self.kind = kind


class LLMHTTPError(LLMError):
    """Non-2xx response, after any retries."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class LLMDecodeError(LLMError):
    """The response body was not a chat completion."""
    pass


@dataclass
class ChatCompletion:
    """The parts of a completion the turn loop needs."""
    content: str
    usage: Usage | None
    raw_response: dict[str, Any]

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatCompletion":
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMDecodeError(f"Missing choices[0].message in response: {e}") from e
        content = message.get("content") if isinstance(message, dict) else None
        return cls(
            content=content if isinstance(content, str) else "No response",
            usage=Usage.from_api(data.get("usage")),
            raw_response=data,
        )


@dataclass
class ModelInfo:
    id: str
    context_length: int | None = None


def _classify_network_error(error: httpx.RequestError) -> LLMNetworkError:
    if isinstance(error, httpx.TimeoutException):
        return LLMNetworkError(str(error), kind="timeout")
    if isinstance(error, httpx.ConnectError):
        return LLMNetworkError(str(error), kind="unreachable")
    return LLMNetworkError(str(error) or type(error).__name__, kind="other")


class LLMClient:
    """
    Synchronous client for the chat endpoint.

    Safe to call from a worker thread; the turn loop never calls it from
    the thread that owns conversation state.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """
        Args:
            config: Endpoint, key, default temperature and timeout
            retry_policy: Backoff policy for transient statuses
            transport: Optional httpx transport (tests inject a MockTransport)
            sleep: Optional sleep function passed to the retry transport
        """
        self.config = config or LLMConfig.from_env()
        self.retry_policy = retry_policy or RetryPolicy.from_env()
        self._sleep = sleep

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=self.config.request_timeout,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )
        self._client = httpx.Client(
            base_url=self.config.base_url.rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _send(self, request: httpx.Request) -> httpx.Response:
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        try:
            return retry.send(self._client, request, self.retry_policy, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Network error for {request.method} {request.url}: {e}")
            raise _classify_network_error(e) from e

    def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
    ) -> ChatCompletion:
        """
        Send a non-streaming chat completion request.

        Raises:
            LLMNetworkError: no HTTP response was received
            LLMHTTPError: non-2xx status after retries
            LLMDecodeError: the body was not a chat completion
        """
        payload = {
            "messages": messages,
            "model": model,
            "stream": False,
            "temperature": self.config.temperature if temperature is None else temperature,
        }
        logger.debug(f"Sending chat request with {len(messages)} messages to {model}")

        response = self._send(self._client.build_request("POST", "chat/completions", json=payload))
        if not response.is_success:
            message = retry.parse_error_message(response.content, response.status_code)
            logger.error(f"HTTP error: {response.status_code} - {message}")
            raise LLMHTTPError(response.status_code, message)

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise LLMDecodeError(f"Response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise LLMDecodeError("Response is not a JSON object")
        return ChatCompletion.from_api_response(data)

    def list_models(self) -> list[ModelInfo]:
        """Fetch the model catalog."""
        response = self._send(self._client.build_request("GET", "models"))
        if not response.is_success:
            message = retry.parse_error_message(response.content, response.status_code)
            raise LLMHTTPError(response.status_code, message)

        try:
            data = response.json()
            entries = data["data"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise LLMDecodeError(f"Failed to parse models response: {e}") from e

        models = []
        for entry in entries:
            if not isinstance(entry, dict) or "id" not in entry:
                continue
            context_length = entry.get("context_length")
            models.append(ModelInfo(
                id=str(entry["id"]),
                context_length=context_length if isinstance(context_length, int) else None,
            ))
        return models

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
