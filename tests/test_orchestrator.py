"""
Tests for the turn orchestrator.

The chat endpoint is replaced by a scripted fake; tools run through a real
ToolExecutor in a temporary working directory.
"""

import threading
from unittest import mock

import pytest

from devagent.config import (
    AgentConfig,
    ExecutorConfig,
    LLMConfig,
    LoopConfig,
    RetryPolicy,
    StorageConfig,
)
from devagent.executor import ToolExecutor
from devagent.llm import (
    ChatCompletion,
    LLMDecodeError,
    LLMHTTPError,
    LLMNetworkError,
    ModelInfo,
)
from devagent.models import FALLBACK_MODELS, ModelRegistry
from devagent.orchestrator import (
    ChatOutcome,
    StepKind,
    TurnOrchestrator,
    TurnState,
)
from devagent.prompts import TITLE_REQUEST
from devagent.storage import SessionStore
from devagent.types import NEW_CHAT_TITLE, Role, Terminal, Usage


def reply(content, usage=None):
    return ChatCompletion(content=content, usage=usage, raw_response={})


class FakeLLM:
    """
    Scripted chat client.

    Each chat call pops the next scripted item: a ChatCompletion is
    returned, an exception is raised, and a callable is called with the
    messages and model. Title requests are answered separately and never
    consume the script.
    """

    def __init__(self, script=(), title="\"Listing Project Files\""):
        self.script = list(script)
        self.title = title
        self.calls = []
        self.title_calls = 0
        self.models: list[ModelInfo] = []
        self._lock = threading.Lock()

    def chat_completion(self, messages, model, temperature=None):
        with self._lock:
            if messages and messages[-1].get("content") == TITLE_REQUEST:
                self.title_calls += 1
                if isinstance(self.title, Exception):
                    raise self.title
                return reply(self.title)
            self.calls.append((messages, model))
            item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages, model)
        return item

    def list_models(self):
        return self.models


@pytest.fixture
def config(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    return AgentConfig(
        llm=LLMConfig(api_key="sk-test"),
        retry=RetryPolicy(),
        executor=ExecutorConfig(working_dir=workdir),
        loop=LoopConfig(),
        storage=StorageConfig(history_path=tmp_path / "history" / "sessions.json"),
    )


@pytest.fixture
def make_orchestrator(config):
    created = []

    def factory(llm, store=True, **kwargs):
        executor = ToolExecutor(config.executor)
        orchestrator = TurnOrchestrator(
            llm,
            executor,
            store=SessionStore(config.storage.history_path) if store else None,
            config=config,
            registry=ModelRegistry(),
            **kwargs,
        )
        created.append((orchestrator, executor))
        return orchestrator

    yield factory
    for orchestrator, executor in created:
        orchestrator.close()
        executor.close()


class TestToolTurns:
    """End-to-end turns with tool calls."""

    def test_list_files_scenario(self, make_orchestrator, config):
        """A simple command runs, its output stays hidden, and the model answers."""
        (config.executor.working_dir / "main.py").write_text("print('hi')\n")
        llm = FakeLLM([
            reply('```json\n{"tool": "terminal", "command": "ls -la"}\n```'),
            reply("The folder contains main.py."),
        ])
        orch = make_orchestrator(llm)

        result = orch.run("list files in this folder")

        assert result.state is TurnState.ANSWERED
        assert result.content == "The folder contains main.py."
        assert result.tool_turns == 1

        messages = orch.current_session.messages
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        tool_message, hidden = messages[1], messages[2]
        assert tool_message.tool_description == "ls -la"
        assert tool_message.tool_output is None
        assert hidden.is_hidden
        assert hidden.content.startswith("Tool executed successfully. Output: ")
        assert "main.py" in hidden.content

        # The second request carries the hidden tool output to the model.
        second_messages, _ = llm.calls[1]
        assert any("main.py" in str(m["content"]) for m in second_messages if m["role"] == "user")

        visible = orch.visible_messages()
        assert len(visible) == 3
        assert not any(m.is_hidden for m in visible)
        assert orch.state is TurnState.ANSWERED

    def test_denied_command_is_shown_and_not_spawned(self, make_orchestrator):
        llm = FakeLLM([
            reply('{"tool":"terminal","command":"sudo rm -rf /"}'),
            reply("I can't run that with safety mode on."),
        ])
        orch = make_orchestrator(llm)

        with mock.patch("devagent.executor.subprocess.Popen") as popen:
            result = orch.run("wipe the disk")

        popen.assert_not_called()
        assert result.state is TurnState.ANSWERED
        tool_message, hidden = orch.current_session.messages[1:3]
        assert tool_message.tool_output.startswith(
            "Safety Mode Blocked: Privilege escalation is blocked"
        )
        assert hidden.content.startswith(
            "Terminal Output:\n```\nSafety Mode Blocked: Privilege escalation is blocked"
        )

    def test_system_prompt_first(self, make_orchestrator, config):
        llm = FakeLLM([reply("hello")])
        orch = make_orchestrator(llm)
        orch.run("hi")
        messages, _ = llm.calls[0]
        assert messages[0]["role"] == "system"
        assert str(config.executor.working_dir) in messages[0]["content"]
        assert "ENABLED" in messages[0]["content"]

    def test_max_tool_turns(self, make_orchestrator, config):
        config.loop.max_tool_turns = 1
        llm = FakeLLM([
            reply('{"tool":"terminal","command":"pwd"}'),
            reply('{"tool":"terminal","command":"pwd"}'),
        ])
        orch = make_orchestrator(llm)

        result = orch.run("where am I")

        assert result.state is TurnState.FAILED
        assert result.content == "Error: Stopped after 1 tool calls without a final answer."
        assert result.tool_turns == 1

    def test_status_updates(self, make_orchestrator):
        statuses = []
        llm = FakeLLM([
            reply('{"tool":"terminal","command":"pwd"}'),
            reply("done"),
        ])
        orch = make_orchestrator(llm, on_status=statuses.append)
        orch.run("where am I")
        assert statuses[:3] == ["Thinking...", "Running command...", "Analyzing..."]
        assert statuses[-1] == ""

    def test_image_sent_as_data_url(self, make_orchestrator):
        llm = FakeLLM([reply("A cat.")])
        orch = make_orchestrator(llm)
        orch.run("what is this", image=b"\x89PNG")
        messages, model = llm.calls[0]
        content = messages[1]["content"]
        assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")
        assert model == "grok-2-vision-1212"


class TestLiveness:
    """Stale responses never change state."""

    def test_cancelled_response_discarded(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM())
        ctx = orch.submit("hi")
        orch.cancel()

        step = orch.apply_response(
            ctx, ChatOutcome(completion=reply("late", Usage(100, 50, 150)))
        )

        assert step.kind is StepKind.DISCARDED
        assert orch.counters.total_tokens == 0
        assert orch.counters.session_cost == 0
        assert [m.content for m in orch.current_session.messages] == ["hi"]
        assert orch.state is TurnState.CANCELLED

    def test_superseded_response_discarded(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM())
        first = orch.submit("one")
        second = orch.submit("two")

        assert orch.apply_response(first, ChatOutcome(completion=reply("old"))).kind is StepKind.DISCARDED
        step = orch.apply_response(second, ChatOutcome(completion=reply("new")))
        assert step.kind is StepKind.ANSWERED
        assert [m.content for m in orch.current_session.messages] == ["one", "two", "new"]

    def test_stale_tool_result_discarded(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM())
        ctx = orch.submit("hi")
        step = orch.apply_response(ctx, ChatOutcome(completion=reply('{"tool":"terminal","command":"pwd"}')))
        assert step.kind is StepKind.TOOL_TURN
        orch.cancel()
        before = len(orch.current_session.messages)

        assert orch.apply_tool_result(ctx, Terminal("pwd"), "/tmp") is None
        assert len(orch.current_session.messages) == before

    def test_counters_only_for_current_session(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM())
        ctx = orch.submit("hi")
        first_session = orch.current_session
        orch.new_session()

        step = orch.apply_response(ctx, ChatOutcome(completion=reply("hello", Usage(100, 50, 150))))

        assert step.kind is StepKind.ANSWERED
        assert first_session.messages[-1].content == "hello"
        assert orch.counters.total_tokens == 0
        assert orch.counters.session_cost == 0

    def test_counters_updated_for_current_session(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM())
        orch.set_model("grok-4")
        ctx = orch.submit("hi")

        orch.apply_response(ctx, ChatOutcome(completion=reply("hello", Usage(1000, 500, 1500))))

        counters = orch.counters
        assert counters.total_tokens == 1500
        assert counters.last_input_tokens == 1000
        assert counters.last_output_tokens == 500
        assert counters.current_model == "grok-4"
        assert counters.session_cost == pytest.approx(0.021)
        assert counters.total_cost == pytest.approx(0.021)
        assert counters.context_usage == pytest.approx(1000 / 256_000)

    def test_cancel_during_request(self, make_orchestrator):
        holder = {}

        def cancel_then_answer(messages, model):
            holder["orch"].cancel()
            return reply("too late")

        orch = make_orchestrator(FakeLLM([cancel_then_answer]))
        holder["orch"] = orch

        result = orch.run("hi")

        assert result.state is TurnState.CANCELLED
        assert [m.content for m in orch.current_session.messages] == ["hi"]


class TestErrors:
    """Chat failures become terminal assistant messages."""

    def test_fallback_on_unknown_model(self, make_orchestrator):
        llm = FakeLLM([LLMHTTPError(400, "Model not found"), reply("ok")])
        orch = make_orchestrator(llm)
        orch.set_model("grok-x")

        result = orch.run("hi")

        assert result.state is TurnState.ANSWERED
        assert [model for _, model in llm.calls] == ["grok-x", FALLBACK_MODELS[0]]
        message = orch.current_session.messages[-1]
        assert message.models_attempted == ["grok-x", FALLBACK_MODELS[0]]
        assert message.used_model == FALLBACK_MODELS[0]

    def test_fallback_exhausted(self, make_orchestrator):
        errors = [LLMHTTPError(400, "Model not found") for _ in range(len(FALLBACK_MODELS) + 1)]
        llm = FakeLLM(errors)
        orch = make_orchestrator(llm)
        orch.set_model("grok-x")

        result = orch.run("hi")

        assert result.state is TurnState.FAILED
        assert len(llm.calls) == len(FALLBACK_MODELS) + 1
        assert result.content == (
            f"Error: Model '{FALLBACK_MODELS[-1]}' is not available. Model not found"
        )

    @pytest.mark.parametrize("error, text", [
        (LLMNetworkError("slow", kind="timeout"), "Error: Request timed out."),
        (LLMNetworkError("refused", kind="unreachable"), "Error: Cannot reach the API server."),
        (LLMNetworkError("tls", kind="other"), "Error: Network error: tls"),
        (LLMHTTPError(401, "nope"), "Error: Invalid API key."),
        (LLMHTTPError(429, "slow down"), "Error: Rate limit exceeded."),
        (LLMHTTPError(503, "down"), "Error: API server error."),
        (LLMHTTPError(403, "Access denied for this key"), "Error: Access denied for this key"),
        (LLMDecodeError("bad json"), "Error: Failed to parse response from server."),
    ])
    def test_error_messages(self, make_orchestrator, error, text):
        orch = make_orchestrator(FakeLLM([error]))

        result = orch.run("hi")

        assert result.state is TurnState.FAILED
        assert result.content.startswith(text)
        last = orch.current_session.messages[-1]
        assert last.content == result.content
        assert not last.is_thinking
        assert orch.status == ""

    def test_unexpected_exception_ends_turn(self, make_orchestrator):
        """A non-LLM error in the client still leaves the orchestrator idle."""
        orch = make_orchestrator(FakeLLM([TypeError("unsupported operand type(s)")]))

        result = orch.run("hello")

        assert result.state is TurnState.FAILED
        assert result.content.startswith("Error: Failed to parse response from server.")
        assert orch.state is TurnState.FAILED
        assert not any(m.is_thinking for m in orch.current_session.messages)

        orch.llm.script.append(reply("recovered"))
        assert orch.run("again").state is TurnState.ANSWERED

    def test_empty_outcome_fails_turn(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM())
        ctx = orch.submit("hi")

        step = orch.apply_response(ctx, ChatOutcome())

        assert step.kind is StepKind.FAILED
        assert orch.state is TurnState.FAILED
        assert orch.current_session.messages[-1].content.startswith("Error: Failed to parse")


class TestSessions:
    """Session management, titles and persistence."""

    def test_title_generated_after_first_exchange(self, make_orchestrator, config):
        llm = FakeLLM([reply("hello")])
        orch = make_orchestrator(llm)

        orch.run("list files in this folder")
        orch.wait_for_background()

        assert orch.current_session.title == "Listing Project Files"
        saved = SessionStore(config.storage.history_path).load()
        assert saved[0].title == "Listing Project Files"

    def test_title_not_regenerated(self, make_orchestrator):
        llm = FakeLLM([reply("one"), reply("two")])
        orch = make_orchestrator(llm)
        orch.run("first")
        orch.wait_for_background()
        orch.run("second")
        orch.wait_for_background()
        assert llm.title_calls == 1

    def test_failed_title_not_retried(self, make_orchestrator):
        """A failed title request is not queued again on later answers."""
        llm = FakeLLM(
            [reply("one"), reply("two")],
            title=LLMNetworkError("refused", kind="unreachable"),
        )
        orch = make_orchestrator(llm)
        orch.run("first")
        orch.wait_for_background()
        orch.run("second")
        orch.wait_for_background()
        assert llm.title_calls == 1
        assert orch.current_session.title == NEW_CHAT_TITLE

    def test_title_skipped_for_renamed_session(self, make_orchestrator):
        llm = FakeLLM([reply("one")])
        orch = make_orchestrator(llm)
        session = orch.new_session()
        orch.rename_session(session.id, "My chat")
        orch.run("first")
        orch.wait_for_background()
        assert llm.title_calls == 0
        assert orch.current_session.title == "My chat"

    def test_history_reloaded(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM([reply("hello")]))
        orch.run("hi")
        session_id = orch.current_session.id

        reloaded = make_orchestrator(FakeLLM())
        assert reloaded.current_session.id == session_id
        assert [m.content for m in reloaded.visible_messages()] == ["hi", "hello"]

    def test_new_switch_delete(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM(), store=False)
        first = orch.new_session()
        second = orch.new_session()
        assert orch.current_session is second
        assert [s.id for s in orch.sessions] == [second.id, first.id]

        assert orch.switch_session(first.id)
        assert orch.current_session is first
        assert not orch.switch_session("missing")

        assert orch.delete_session(first.id)
        assert orch.current_session is second
        assert orch.delete_session(second.id)
        assert orch.current_session is None
        assert orch.visible_messages() == []

    def test_switch_resets_session_counters(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM(), store=False)
        first = orch.new_session()
        orch.counters.session_cost = 1.5
        orch.counters.total_cost = 1.5
        orch.new_session()
        orch.switch_session(first.id)
        assert orch.counters.session_cost == 0
        assert orch.counters.total_cost == 1.5

    def test_rename(self, make_orchestrator):
        orch = make_orchestrator(FakeLLM(), store=False)
        session = orch.new_session()
        assert session.title == NEW_CHAT_TITLE
        assert orch.rename_session(session.id, "  Build fixes ")
        assert session.title == "Build fixes"
        assert not orch.rename_session(session.id, "   ")


class TestModels:
    """Model catalog refresh."""

    def test_refresh_resets_unavailable_selection(self, make_orchestrator):
        llm = FakeLLM()
        llm.models = [ModelInfo("grok-4", 300_000), ModelInfo("grok-2-1212")]
        orch = make_orchestrator(llm, store=False)
        orch.set_model("grok-x")

        available = orch.refresh_models()

        assert available == ["grok-2-1212", "grok-4"]
        assert orch.selected_model == "auto"
        assert orch.registry.context_window("grok-4") == 300_000

    def test_refresh_keeps_available_selection(self, make_orchestrator):
        llm = FakeLLM()
        llm.models = [ModelInfo("grok-4")]
        orch = make_orchestrator(llm, store=False)
        orch.set_model("grok-4")
        orch.refresh_models()
        assert orch.selected_model == "grok-4"
