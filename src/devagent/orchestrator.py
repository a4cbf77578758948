"""
TurnOrchestrator - the request lifecycle of a developer-agent chat.

One user message becomes a turn:

    IDLE -> AWAITING_RESPONSE -> TOOL_TURN -> AWAITING_RESPONSE -> ... -> ANSWERED
                                                                      -> FAILED
                                                                      -> CANCELLED

run() drives the turn as a plain loop. Network calls and tool executions
happen on a single worker thread; every change to sessions, messages and
counters goes through the apply_* transitions, which take the lock and
check liveness first. A response whose RequestContext is no longer the
outstanding one (cancelled, or superseded by a newer message) is dropped
without touching anything.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from devagent.config import AUTO_MODEL, AgentConfig
from devagent.executor import ToolExecutor
from devagent.llm import (
    ChatCompletion,
    LLMClient,
    LLMDecodeError,
    LLMError,
    LLMHTTPError,
    LLMNetworkError,
)
from devagent.models import ModelRegistry
from devagent.parser import looks_like_tool_call, parse_tool_action
from devagent.prompts import TITLE_REQUEST, build_system_prompt
from devagent.storage import SessionStore
from devagent.types import (
    NEW_CHAT_TITLE,
    ChatSession,
    ConversationMessage,
    RequestContext,
    Role,
    ToolAction,
    Usage,
    UsageCounters,
)
from devagent.visibility import format_tool_result, should_show_output

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 60


class TurnState(Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    TOOL_TURN = "tool_turn"
    ANSWERED = "answered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepKind(Enum):
    """What the loop should do after a response has been applied."""
    DISCARDED = "discarded"
    RETRY = "retry"
    TOOL_TURN = "tool_turn"
    ANSWERED = "answered"
    FAILED = "failed"


@dataclass
class ChatOutcome:
    """Result of one chat request: exactly one of completion or error is set."""
    completion: ChatCompletion | None = None
    error: LLMError | None = None


@dataclass
class TurnStep:
    kind: StepKind
    context: RequestContext | None = None
    action: ToolAction | None = None
    content: str = ""


@dataclass
class TurnResult:
    """How a call to run() ended."""
    state: TurnState
    content: str = ""
    tool_turns: int = 0
    model: str | None = None


def describe_error(error: LLMError) -> str:
    """User-facing text for a failed chat request."""
    if isinstance(error, LLMNetworkError):
        if error.kind == "timeout":
            return "Request timed out. The server took too long to respond. Please try again."
        if error.kind == "unreachable":
            return "Cannot reach the API server. Please check your internet connection."
        return f"Network error: {error}"
    if isinstance(error, LLMHTTPError):
        if error.status_code == 401:
            return "Invalid API key. Please check your API key."
        if error.status_code == 429:
            return "Rate limit exceeded. Please wait a moment and try again."
        if error.status_code >= 500:
            return "API server error. Please try again in a few moments."
        return error.message
    if isinstance(error, LLMDecodeError):
        return "Failed to parse response from server. Please try again."
    return str(error)


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'").strip()
    return title[:TITLE_MAX_LENGTH]


class TurnOrchestrator:
    """
    Owns chat sessions and drives turns against the chat endpoint.

    Args:
        llm: Chat client
        executor: Tool executor
        store: Optional session store; sessions are loaded from it at start
            and saved at every turn boundary
        config: Agent configuration (model selection, loop bound, retention)
        registry: Model registry for selection, pricing and context windows
        on_status: Called with every status change ("" when idle)
    """

    def __init__(
        self,
        llm: LLMClient,
        executor: ToolExecutor,
        store: SessionStore | None = None,
        config: AgentConfig | None = None,
        registry: ModelRegistry | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        self.llm = llm
        self.executor = executor
        self.store = store
        self.config = config or AgentConfig.from_env()
        self.registry = registry or ModelRegistry()
        self.on_status = on_status

        self.selected_model = self.config.llm.model or AUTO_MODEL
        self.counters = UsageCounters()
        self.state = TurnState.IDLE
        self.status = ""

        self._lock = threading.RLock()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="devagent-turn")
        self._outstanding: RequestContext | None = None
        self._titles_requested: set[str] = set()

        self._sessions: list[ChatSession] = []
        if store is not None:
            loaded = store.load()
            loaded = store.clean_old_sessions(loaded, self.config.storage.retention_days)
            self._sessions = sorted(loaded, key=lambda s: s.last_modified, reverse=True)
        self._current_session_id: str | None = self._sessions[0].id if self._sessions else None

    # =========================================================================
    # Sessions
    # =========================================================================

    @property
    def sessions(self) -> list[ChatSession]:
        with self._lock:
            return list(self._sessions)

    @property
    def current_session(self) -> ChatSession | None:
        with self._lock:
            if self._current_session_id is None:
                return None
            return self._find_session(self._current_session_id)

    def _find_session(self, session_id: str) -> ChatSession | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def new_session(self) -> ChatSession:
        with self._lock:
            session = ChatSession()
            self._sessions.insert(0, session)
            self._current_session_id = session.id
            self.counters.reset_session()
            self._persist()
            logger.info(f"Created session {session.id}")
            return session

    def switch_session(self, session_id: str) -> bool:
        with self._lock:
            if self._find_session(session_id) is None:
                return False
            if session_id != self._current_session_id:
                self._current_session_id = session_id
                self.counters.reset_session()
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._find_session(session_id)
            if session is None:
                return False
            self._sessions.remove(session)
            if self._current_session_id == session_id:
                self._current_session_id = self._sessions[0].id if self._sessions else None
                self.counters.reset_session()
            self._persist()
            return True

    def rename_session(self, session_id: str, title: str) -> bool:
        with self._lock:
            session = self._find_session(session_id)
            if session is None or not title.strip():
                return False
            session.title = title.strip()
            session.touch()
            self._persist()
            return True

    def visible_messages(self) -> list[ConversationMessage]:
        """Messages of the current session that may be shown to a person."""
        session = self.current_session
        if session is None:
            return []
        with self._lock:
            return [m for m in session.messages if not m.is_hidden]

    # =========================================================================
    # Settings
    # =========================================================================

    def set_model(self, model: str) -> None:
        with self._lock:
            self.selected_model = model or AUTO_MODEL

    def set_safety(self, enabled: bool) -> None:
        with self._lock:
            self.executor.config.safety_enabled = enabled
            logger.info(f"Safety mode {'enabled' if enabled else 'disabled'}")

    def refresh_models(self) -> list[str]:
        """
        Load the model catalog into the registry.

        A user-selected model the catalog does not offer falls back to
        "auto". Returns the available model ids (empty on failure).
        """
        try:
            models = self.llm.list_models()
        except LLMError as e:
            logger.warning(f"Failed to fetch model catalog: {e}")
            return []

        with self._lock:
            self.registry.update_catalog([(m.id, m.context_length) for m in models])
            available = self.registry.available_models
            if self.selected_model != AUTO_MODEL and self.selected_model not in available:
                logger.info(f"Model '{self.selected_model}' is not available, using auto")
                self.selected_model = AUTO_MODEL
            return list(available)

    # =========================================================================
    # Turn transitions
    # =========================================================================

    def _set_status(self, status: str) -> None:
        self.status = status
        if self.on_status is not None:
            self.on_status(status)

    def _is_live(self, ctx: RequestContext) -> bool:
        return self._outstanding is not None and self._outstanding.request_id == ctx.request_id

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save(self._sessions)

    def _drop_placeholder(self, ctx: RequestContext) -> None:
        session = self._find_session(ctx.session_id)
        if session is None:
            return
        message = session.find_message(ctx.assistant_message_id)
        if message is not None and message.is_thinking:
            session.messages.remove(message)

    def submit(self, text: str, image: bytes | None = None) -> RequestContext:
        """
        Start a turn: append the user message and a thinking placeholder.

        Any turn still in flight is superseded.
        """
        with self._lock:
            if self._outstanding is not None:
                self._drop_placeholder(self._outstanding)

            session = self.current_session or self.new_session()
            session.messages.append(ConversationMessage(role=Role.USER, content=text, image=image))
            placeholder = ConversationMessage(role=Role.ASSISTANT, is_thinking=True)
            session.messages.append(placeholder)
            session.touch()

            model = self.registry.resolve_model(self.selected_model, text, has_image=image is not None)
            ctx = RequestContext(
                session_id=session.id,
                model=model,
                assistant_message_id=placeholder.id,
            )
            self._outstanding = ctx
            self.state = TurnState.AWAITING_RESPONSE
            self._set_status("Thinking...")
            logger.info(f"Turn started in session {session.id} with model {model}")
            return ctx

    def _api_messages(self, session: ChatSession) -> list[dict]:
        system = build_system_prompt(
            self.executor.working_dir, self.executor.config.safety_enabled
        )
        messages = [{"role": Role.SYSTEM.value, "content": system}]
        messages.extend(m.to_api_dict() for m in session.messages if not m.is_thinking)
        return messages

    def request(self, ctx: RequestContext) -> ChatOutcome:
        """Send the conversation for ``ctx``. Runs on the worker; never raises."""
        with self._lock:
            session = self._find_session(ctx.session_id)
            if session is None:
                return ChatOutcome(error=LLMError("Session no longer exists"))
            messages = self._api_messages(session)

        try:
            return ChatOutcome(completion=self.llm.chat_completion(messages, ctx.model))
        except LLMError as e:
            return ChatOutcome(error=e)
        except Exception as e:
            logger.exception(f"Unexpected failure in chat request {ctx.request_id}")
            return ChatOutcome(error=LLMDecodeError(f"Unexpected response: {e}"))

    def _record_usage(self, model: str, usage: Usage) -> None:
        counters = self.counters
        counters.total_tokens += usage.total_tokens
        counters.last_input_tokens = usage.prompt_tokens
        counters.last_output_tokens = usage.completion_tokens
        counters.context_usage = usage.prompt_tokens / self.registry.context_window(model)
        cost = self.registry.calculate_cost(model, usage.prompt_tokens, usage.completion_tokens)
        counters.session_cost += cost
        counters.total_cost += cost
        counters.current_model = model

    def _finish(self, state: TurnState, session: ChatSession) -> None:
        self.state = state
        self._outstanding = None
        session.touch()
        self._persist()
        self._set_status("")

    def apply_response(self, ctx: RequestContext, outcome: ChatOutcome) -> TurnStep:
        """Apply a chat outcome if ``ctx`` is still the outstanding request."""
        with self._lock:
            if not self._is_live(ctx):
                logger.debug(f"Discarding stale response for request {ctx.request_id}")
                return TurnStep(StepKind.DISCARDED)

            session = self._find_session(ctx.session_id)
            message = session.find_message(ctx.assistant_message_id) if session else None
            if session is None or message is None:
                self._outstanding = None
                self.state = TurnState.CANCELLED
                self._set_status("")
                return TurnStep(StepKind.DISCARDED)

            if ctx.model not in message.models_attempted:
                message.models_attempted.append(ctx.model)

            if outcome.error is not None:
                return self._apply_error(ctx, session, message, outcome.error)

            completion = outcome.completion
            if completion is None:
                return self._apply_error(ctx, session, message, LLMDecodeError("Empty chat outcome"))
            message.used_model = ctx.model
            if completion.usage is not None and ctx.session_id == self._current_session_id:
                self._record_usage(ctx.model, completion.usage)

            message.content = completion.content
            message.is_thinking = False

            action = parse_tool_action(completion.content) if looks_like_tool_call(completion.content) else None
            if action is not None:
                message.tool_description = action.description
                self.state = TurnState.TOOL_TURN
                self._set_status(action.status)
                logger.info(f"Tool call: {action.description}")
                return TurnStep(StepKind.TOOL_TURN, action=action)

            self._finish(TurnState.ANSWERED, session)
            self._maybe_generate_title(session)
            return TurnStep(StepKind.ANSWERED, content=completion.content)

    def _apply_error(
        self,
        ctx: RequestContext,
        session: ChatSession,
        message: ConversationMessage,
        error: LLMError,
    ) -> TurnStep:
        if isinstance(error, LLMHTTPError) and error.status_code == 400:
            fallback = self.registry.next_fallback(message.models_attempted)
            if fallback is not None:
                logger.warning(f"Model '{ctx.model}' rejected, retrying with '{fallback}'")
                message.content = ""
                message.is_thinking = True
                retry_ctx = RequestContext(
                    session_id=ctx.session_id,
                    model=fallback,
                    assistant_message_id=message.id,
                )
                self._outstanding = retry_ctx
                self.state = TurnState.AWAITING_RESPONSE
                self._set_status(f"Retrying with {fallback}...")
                return TurnStep(StepKind.RETRY, context=retry_ctx)
            text = f"Model '{ctx.model}' is not available. {error.message}"
        else:
            text = describe_error(error)

        logger.error(f"Turn failed: {error}")
        message.content = f"Error: {text}"
        message.is_thinking = False
        self._finish(TurnState.FAILED, session)
        return TurnStep(StepKind.FAILED, content=message.content)

    def apply_tool_result(
        self, ctx: RequestContext, action: ToolAction, output: str
    ) -> RequestContext | None:
        """
        Feed a tool result back and open the follow-up request.

        Returns the new context, or None if the turn is no longer live.
        """
        with self._lock:
            if not self._is_live(ctx):
                logger.debug(f"Discarding tool result for stale request {ctx.request_id}")
                return None
            session = self._find_session(ctx.session_id)
            message = session.find_message(ctx.assistant_message_id) if session else None
            if session is None or message is None:
                return None

            if should_show_output(action, output):
                message.tool_output = output
            session.messages.append(ConversationMessage(
                role=Role.USER,
                content=format_tool_result(action, output),
                is_hidden=True,
            ))
            session.touch()
            self._persist()

            placeholder = ConversationMessage(role=Role.ASSISTANT, is_thinking=True)
            session.messages.append(placeholder)
            next_ctx = RequestContext(
                session_id=session.id,
                model=ctx.model,
                assistant_message_id=placeholder.id,
            )
            self._outstanding = next_ctx
            self.state = TurnState.AWAITING_RESPONSE
            self._set_status("Analyzing...")
            return next_ctx

    def _stop_tool_chain(self, ctx: RequestContext, limit: int) -> str | None:
        with self._lock:
            if not self._is_live(ctx):
                return None
            session = self._find_session(ctx.session_id)
            if session is None:
                return None
            content = f"Error: Stopped after {limit} tool calls without a final answer."
            session.messages.append(ConversationMessage(role=Role.ASSISTANT, content=content))
            self._finish(TurnState.FAILED, session)
            return content

    def cancel(self) -> None:
        """Abandon the in-flight turn. Late responses for it are discarded."""
        with self._lock:
            if self._outstanding is not None:
                self._drop_placeholder(self._outstanding)
                logger.info(f"Cancelled request {self._outstanding.request_id}")
            self._outstanding = None
            self.state = TurnState.CANCELLED
            self._set_status("")

    # =========================================================================
    # Driver
    # =========================================================================

    def run(self, text: str, image: bytes | None = None) -> TurnResult:
        """Run one user message to completion, executing tool calls as they come."""
        ctx = self.submit(text, image)
        tool_turns = 0
        max_tool_turns = self.config.loop.max_tool_turns

        while True:
            outcome = self._worker.submit(self.request, ctx).result()
            step = self.apply_response(ctx, outcome)

            if step.kind is StepKind.DISCARDED:
                return TurnResult(TurnState.CANCELLED, tool_turns=tool_turns, model=ctx.model)
            if step.kind is StepKind.RETRY:
                if step.context is None:
                    raise RuntimeError("Retry step without a request context")
                ctx = step.context
                continue
            if step.kind is StepKind.ANSWERED:
                return TurnResult(TurnState.ANSWERED, step.content, tool_turns, ctx.model)
            if step.kind is StepKind.FAILED:
                return TurnResult(TurnState.FAILED, step.content, tool_turns, ctx.model)

            if step.action is None:
                raise RuntimeError("Tool step without an action")
            if max_tool_turns and tool_turns >= max_tool_turns:
                content = self._stop_tool_chain(ctx, max_tool_turns)
                if content is None:
                    return TurnResult(TurnState.CANCELLED, tool_turns=tool_turns, model=ctx.model)
                return TurnResult(TurnState.FAILED, content, tool_turns, ctx.model)

            tool_turns += 1
            output = self._worker.submit(self.executor.execute, step.action).result()
            next_ctx = self.apply_tool_result(ctx, step.action, output)
            if next_ctx is None:
                return TurnResult(TurnState.CANCELLED, tool_turns=tool_turns, model=ctx.model)
            ctx = next_ctx

    # =========================================================================
    # Titles
    # =========================================================================

    def _maybe_generate_title(self, session: ChatSession) -> Future | None:
        if session.title != NEW_CHAT_TITLE or len(session.messages) < 2:
            return None
        # One attempt per session; a failed title leaves "New Chat" in place.
        if session.id in self._titles_requested:
            return None
        first = next((m for m in session.messages if m.role is Role.USER and not m.is_hidden), None)
        if first is None:
            return None
        self._titles_requested.add(session.id)
        model = self.registry.resolve_model(self.selected_model, first.content)
        prompt = [
            {"role": Role.USER.value, "content": first.content},
            {"role": Role.USER.value, "content": TITLE_REQUEST},
        ]
        return self._worker.submit(self._generate_title, session.id, prompt, model)

    def _generate_title(self, session_id: str, prompt: list[dict], model: str) -> None:
        try:
            completion = self.llm.chat_completion(prompt, model)
        except LLMError as e:
            logger.warning(f"Title generation failed: {e}")
            return

        title = clean_title(completion.content)
        if not title:
            return
        with self._lock:
            session = self._find_session(session_id)
            if session is None or session.title != NEW_CHAT_TITLE:
                return
            session.title = title
            self._persist()
            logger.info(f"Session {session_id} titled '{title}'")

    def wait_for_background(self) -> None:
        """Block until work already queued on the worker (e.g. titles) is done."""
        self._worker.submit(lambda: None).result()

    def close(self) -> None:
        self._worker.shutdown(wait=False, cancel_futures=True)
