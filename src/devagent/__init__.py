"""
devagent - a developer-agent chat loop.

A remote language model can ask for local actions (run a shell command,
read or write a file, fetch or search the web, open a URL, check a local
server port) and gets their results back as hidden conversation context:

1. The model replies with a single JSON tool call
2. The call is parsed, checked by safety mode and executed with bounded time
3. The output goes back to the model, which either calls another tool or answers

Every model response is matched against the outstanding request before it
is applied, so a cancelled or superseded turn can never change the
conversation.
"""

__version__ = "0.1.0"

from devagent.config import AgentConfig, ExecutorConfig, LLMConfig, RetryPolicy
from devagent.executor import ProcessRegistry, ToolExecutor
from devagent.llm import LLMClient, LLMError
from devagent.models import ModelRegistry
from devagent.orchestrator import TurnOrchestrator, TurnResult, TurnState
from devagent.parser import parse_tool_action
from devagent.safety import validate_command
from devagent.storage import SessionStore
from devagent.types import (
    ChatSession,
    CheckServerStatus,
    ConversationMessage,
    FetchWeb,
    OpenURL,
    ReadFile,
    RequestContext,
    SafetyDecision,
    SearchWeb,
    Terminal,
    ToolAction,
    WriteFile,
)

__all__ = [
    "AgentConfig",
    "ChatSession",
    "CheckServerStatus",
    "ConversationMessage",
    "ExecutorConfig",
    "FetchWeb",
    "LLMClient",
    "LLMConfig",
    "LLMError",
    "ModelRegistry",
    "OpenURL",
    "ProcessRegistry",
    "ReadFile",
    "RequestContext",
    "RetryPolicy",
    "SafetyDecision",
    "SearchWeb",
    "SessionStore",
    "Terminal",
    "ToolAction",
    "ToolExecutor",
    "TurnOrchestrator",
    "TurnResult",
    "TurnState",
    "WriteFile",
    "parse_tool_action",
    "validate_command",
]
