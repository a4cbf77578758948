"""
Configuration for the developer agent.

All configuration is loaded from environment variables so the same code
runs against any OpenAI-compatible chat endpoint without hardcoding keys
or paths. Every dataclass here has a ``from_env`` constructor and sane
defaults for direct construction in tests.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BASE_URL = "https://api.x.ai/v1"
AUTO_MODEL = "auto"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LLMConfig:
    """Configuration for the chat completion client."""
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str = AUTO_MODEL
    temperature: float = 0.1
    request_timeout: float = 120.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("DEVAGENT_BASE_URL", DEFAULT_BASE_URL),
            api_key=os.getenv("DEVAGENT_API_KEY", ""),
            model=os.getenv("DEVAGENT_MODEL", AUTO_MODEL),
            temperature=float(os.getenv("DEVAGENT_TEMPERATURE", "0.1")),
            request_timeout=float(os.getenv("DEVAGENT_REQUEST_TIMEOUT", "120")),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for transient HTTP failures.

    Immutable: each retry computes a fresh delay from these values, the
    policy itself is never adjusted at runtime.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable_statuses: frozenset[int] = frozenset({429, 500, 502, 503, 504})

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("DEVAGENT_RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("DEVAGENT_RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("DEVAGENT_RETRY_MAX_DELAY", "30.0")),
        )


@dataclass
class ExecutorConfig:
    """
    Configuration for local tool execution.

    working_dir is supplied by the caller; the executor never picks or
    persists it on its own.
    """
    working_dir: Path = field(default_factory=Path.cwd)
    safety_enabled: bool = True
    command_timeout: float = 30.0
    server_grace_period: float = 2.5
    web_timeout: float = 15.0
    web_deadline: float = 20.0
    port_probe_timeout: float = 3.0
    port_probe_deadline: float = 5.0
    max_read_bytes: int = 1_000_000
    large_file_preview_bytes: int = 100_000

    def __post_init__(self) -> None:
        self.working_dir = Path(self.working_dir).expanduser()

    @classmethod
    def from_env(cls) -> "ExecutorConfig":
        """Load configuration from environment variables."""
        return cls(
            working_dir=Path(os.getenv("DEVAGENT_WORKDIR", os.getcwd())),
            safety_enabled=_env_bool("DEVAGENT_SAFETY_MODE", True),
            command_timeout=float(os.getenv("DEVAGENT_COMMAND_TIMEOUT", "30")),
        )


@dataclass
class LoopConfig:
    """
    Configuration for the turn loop.

    max_tool_turns bounds how many tool turns a single user message may
    chain. Zero means unbounded.
    """
    max_tool_turns: int = 0

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_tool_turns=int(os.getenv("DEVAGENT_MAX_TOOL_TURNS", "0")),
        )


@dataclass
class StorageConfig:
    """Where chat history lives and how long it is kept (0 keeps forever)."""
    history_path: Path = field(
        default_factory=lambda: Path("~/.devagent/history/sessions.json").expanduser()
    )
    retention_days: int = 0

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """Load configuration from environment variables."""
        return cls(
            history_path=Path(
                os.getenv("DEVAGENT_HISTORY_PATH", "~/.devagent/history/sessions.json")
            ).expanduser(),
            retention_days=int(os.getenv("DEVAGENT_HISTORY_RETENTION_DAYS", "0")),
        )


@dataclass
class AgentConfig:
    """Combined configuration for the entire agent."""
    llm: LLMConfig
    retry: RetryPolicy
    executor: ExecutorConfig
    loop: LoopConfig
    storage: StorageConfig

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            retry=RetryPolicy.from_env(),
            executor=ExecutorConfig.from_env(),
            loop=LoopConfig.from_env(),
            storage=StorageConfig.from_env(),
        )
