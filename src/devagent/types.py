"""
Core types for the developer agent.

These are the values that flow through the turn loop: conversation
messages and sessions, the tool actions the model may request, and the
small immutable records (safety decisions, request contexts) the loop
uses to make decisions.
"""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

NEW_CHAT_TITLE = "New Chat"


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ConversationMessage:
    """
    A single entry in a chat session.

    Hidden messages carry tool output back to the model. They are part of
    the model context but must never be rendered to a human.
    """
    role: Role
    content: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    image: bytes | None = None
    is_thinking: bool = False
    is_hidden: bool = False
    tool_description: str | None = None
    tool_output: str | None = None
    models_attempted: list[str] = field(default_factory=list)
    used_model: str | None = None

    def to_api_dict(self) -> dict[str, Any]:
        """Convert to OpenAI chat format, inlining any image as a data URL."""
        if self.image is not None:
            encoded = base64.b64encode(self.image).decode("ascii")
            return {
                "role": self.role.value,
                "content": [
                    {"type": "text", "text": self.content},
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:image/png;base64,{encoded}",
                            "detail": "high",
                        },
                    },
                ],
            }
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "image": base64.b64encode(self.image).decode("ascii") if self.image else None,
            "is_thinking": self.is_thinking,
            "is_hidden": self.is_hidden,
            "tool_description": self.tool_description,
            "tool_output": self.tool_output,
            "models_attempted": list(self.models_attempted),
            "used_model": self.used_model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationMessage":
        image = data.get("image")
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            content=data.get("content", ""),
            image=base64.b64decode(image) if image else None,
            is_thinking=data.get("is_thinking", False),
            is_hidden=data.get("is_hidden", False),
            tool_description=data.get("tool_description"),
            tool_output=data.get("tool_output"),
            models_attempted=list(data.get("models_attempted") or []),
            used_model=data.get("used_model"),
        )


@dataclass
class ChatSession:
    """A titled conversation, owned by the orchestrator."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = NEW_CHAT_TITLE
    messages: list[ConversationMessage] = field(default_factory=list)
    last_modified: datetime = field(default_factory=datetime.now)

    def find_message(self, message_id: str) -> ConversationMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def touch(self) -> None:
        self.last_modified = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "last_modified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatSession":
        return cls(
            id=data["id"],
            title=data.get("title", NEW_CHAT_TITLE),
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages", [])],
            last_modified=datetime.fromisoformat(data["last_modified"]),
        )


# =============================================================================
# Tool actions
# =============================================================================

@dataclass(frozen=True)
class Terminal:
    """Run a shell command in the working directory."""
    command: str

    @property
    def description(self) -> str:
        return self.command

    @property
    def status(self) -> str:
        return "Running command..."


@dataclass(frozen=True)
class ReadFile:
    path: str

    @property
    def description(self) -> str:
        return f"Read {self.path}"

    @property
    def status(self) -> str:
        return "Reading file..."


@dataclass(frozen=True)
class WriteFile:
    path: str
    content: str

    @property
    def description(self) -> str:
        return f"Write {self.path}"

    @property
    def status(self) -> str:
        return "Writing file..."


@dataclass(frozen=True)
class FetchWeb:
    url: str

    @property
    def description(self) -> str:
        return f"Fetch {self.url}"

    @property
    def status(self) -> str:
        return "Fetching..."


@dataclass(frozen=True)
class SearchWeb:
    query: str

    @property
    def description(self) -> str:
        return f"Search: {self.query}"

    @property
    def status(self) -> str:
        return "Searching..."


@dataclass(frozen=True)
class OpenURL:
    """Open a URL in the user's browser, probing loopback servers first."""
    url: str

    @property
    def description(self) -> str:
        return f"Open {self.url}"

    @property
    def status(self) -> str:
        return "Opening..."


@dataclass(frozen=True)
class CheckServerStatus:
    port: int

    @property
    def description(self) -> str:
        return f"Check localhost:{self.port}"

    @property
    def status(self) -> str:
        return "Checking..."


ToolAction = Union[
    Terminal, ReadFile, WriteFile, FetchWeb, SearchWeb, OpenURL, CheckServerStatus
]


@dataclass(frozen=True)
class SafetyDecision:
    """Outcome of a safety check. reason is set whenever allowed is False."""
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class RequestContext:
    """
    Identity of one outstanding chat request.

    request_id is fresh for every attempt. A response is applied only if
    its request_id still matches the orchestrator's outstanding one, and
    usage counters are touched only if session_id is still the active
    session.
    """
    session_id: str
    model: str
    assistant_message_id: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the chat endpoint."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "Usage | None":
        if not data or not isinstance(data, dict):
            return None
        return cls(
            prompt_tokens=_token_count(data.get("prompt_tokens")),
            completion_tokens=_token_count(data.get("completion_tokens")),
            total_tokens=_token_count(data.get("total_tokens")),
        )


def _token_count(value: Any) -> int:
    """Null, missing or non-numeric counts read as zero."""
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class UsageCounters:
    """Per-session token and cost accounting, plus the lifetime total cost."""
    total_tokens: int = 0
    last_input_tokens: int = 0
    last_output_tokens: int = 0
    context_usage: float = 0.0
    session_cost: float = 0.0
    total_cost: float = 0.0
    current_model: str | None = None

    def reset_session(self) -> None:
        """Clear per-session values; total_cost survives."""
        self.total_tokens = 0
        self.last_input_tokens = 0
        self.last_output_tokens = 0
        self.context_usage = 0.0
        self.session_cost = 0.0
        self.current_model = None
