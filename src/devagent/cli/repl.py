"""
ChatREPL - a plain terminal front end for the turn orchestrator.

Everything is printed as text; slash commands manage sessions, the model
and safety mode. Ctrl-C during a turn cancels it, Ctrl-C at the prompt
(or /quit) exits.
"""

import argparse
import logging
import sys
from collections.abc import Callable
from pathlib import Path

from devagent import __version__
from devagent.config import AUTO_MODEL, AgentConfig
from devagent.executor import ToolExecutor
from devagent.llm import LLMClient
from devagent.models import ModelRegistry
from devagent.orchestrator import TurnOrchestrator, TurnState
from devagent.storage import SessionStore
from devagent.types import ConversationMessage, Role

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  /new               Start a new chat
  /list              List chats
  /switch <n>        Switch to chat number n from /list
  /delete <n>        Delete chat number n from /list
  /rename <title>    Rename the current chat
  /model [id|auto]   Show or set the model
  /models            Refresh and list available models
  /safety [on|off]   Show or toggle safety mode
  /cost              Show token usage and cost
  /help              Show this help
  /quit              Exit"""


class ChatREPL:
    """
    Line-oriented chat loop over a TurnOrchestrator.

    Output goes through ``write`` so the REPL can be driven from tests.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        write: Callable[[str], None] = print,
    ):
        self.orchestrator = orchestrator
        self.write = write
        self.running = True

    # -------------------------------------------------------------------------
    # Formatting
    # -------------------------------------------------------------------------

    def format_message(self, message: ConversationMessage) -> str:
        if message.role is Role.USER:
            return f"> {message.content}"

        lines = []
        if message.tool_description:
            lines.append(f"[tool] {message.tool_description}")
            if message.tool_output:
                lines.append(message.tool_output.rstrip())
        else:
            lines.append(message.content)
        if message.used_model:
            lines.append(f"  ({message.used_model})")
        return "\n".join(lines)

    def format_cost(self) -> str:
        c = self.orchestrator.counters
        return (
            f"Model: {c.current_model or '-'}\n"
            f"Tokens: {c.total_tokens} (last in {c.last_input_tokens}, out {c.last_output_tokens})\n"
            f"Context used: {c.context_usage:.1%}\n"
            f"Session cost: ${c.session_cost:.4f}\n"
            f"Total cost: ${c.total_cost:.4f}"
        )

    def list_sessions(self) -> str:
        sessions = self.orchestrator.sessions
        if not sessions:
            return "No chats yet."
        current = self.orchestrator.current_session
        lines = []
        for index, session in enumerate(sessions, start=1):
            marker = "*" if current is not None and session.id == current.id else " "
            stamp = session.last_modified.strftime("%Y-%m-%d %H:%M")
            lines.append(f"{marker} {index:>2}. {session.title}  ({stamp})")
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _session_at(self, arg: str):
        try:
            index = int(arg) - 1
        except ValueError:
            return None
        sessions = self.orchestrator.sessions
        if 0 <= index < len(sessions):
            return sessions[index]
        return None

    def handle_command(self, line: str) -> str:
        """Run a slash command and return the text to print."""
        name, _, arg = line.strip().partition(" ")
        arg = arg.strip()
        orch = self.orchestrator

        if name in ("/quit", "/exit"):
            self.running = False
            return "Bye."
        if name == "/help":
            return HELP_TEXT
        if name == "/new":
            orch.new_session()
            return "Started a new chat."
        if name == "/list":
            return self.list_sessions()
        if name == "/switch":
            session = self._session_at(arg)
            if session is None or not orch.switch_session(session.id):
                return f"No chat numbered {arg!r}."
            history = [self.format_message(m) for m in orch.visible_messages()]
            return "\n\n".join([f"Switched to: {session.title}", *history])
        if name == "/delete":
            session = self._session_at(arg)
            if session is None or not orch.delete_session(session.id):
                return f"No chat numbered {arg!r}."
            return f"Deleted: {session.title}"
        if name == "/rename":
            current = orch.current_session
            if current is None or not orch.rename_session(current.id, arg):
                return "Nothing to rename."
            return f"Renamed to: {arg}"
        if name == "/model":
            if not arg:
                return f"Model: {orch.selected_model}"
            orch.set_model(arg)
            return f"Model set to {arg}."
        if name == "/models":
            models = orch.refresh_models()
            if not models:
                return "Could not load the model catalog."
            return "\n".join([AUTO_MODEL, *models])
        if name == "/safety":
            if arg in ("on", "off"):
                orch.set_safety(arg == "on")
            enabled = orch.executor.config.safety_enabled
            return f"Safety mode: {'ON' if enabled else 'OFF'}"
        if name == "/cost":
            return self.format_cost()
        return f"Unknown command: {name}. Type /help for commands."

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    def send(self, text: str) -> str:
        """Run one turn and return the newly visible assistant output."""
        orch = self.orchestrator
        before = len(orch.visible_messages())
        try:
            result = orch.run(text)
        except KeyboardInterrupt:
            orch.cancel()
            return "(cancelled)"

        if result.state is TurnState.CANCELLED:
            return "(cancelled)"
        new = [m for m in orch.visible_messages()[before:] if m.role is Role.ASSISTANT]
        return "\n\n".join(self.format_message(m) for m in new)

    def on_status(self, status: str) -> None:
        if status:
            self.write(f"... {status}")

    def loop(self, read: Callable[[str], str] = input) -> None:
        self.write(f"devagent {__version__}. Type /help for commands.")
        while self.running:
            try:
                line = read("you> ").strip()
            except (EOFError, KeyboardInterrupt):
                self.write("")
                break
            if not line:
                continue
            if line.startswith("/"):
                self.write(self.handle_command(line))
            else:
                self.write(self.send(line))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="devagent - chat with a developer agent")
    parser.add_argument("--model", help="Model id, or 'auto' (default from DEVAGENT_MODEL)")
    parser.add_argument("--workdir", type=Path, help="Working directory for tools")
    parser.add_argument("--no-safety", action="store_true", help="Disable safety mode")
    parser.add_argument("--history", type=Path, help="Chat history file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"devagent {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = AgentConfig.from_env()
    if args.model:
        config.llm.model = args.model
    if args.workdir:
        config.executor.working_dir = args.workdir.expanduser()
    if args.no_safety:
        config.executor.safety_enabled = False
    if args.history:
        config.storage.history_path = args.history.expanduser()

    if not config.llm.api_key:
        print("DEVAGENT_API_KEY is not set.", file=sys.stderr)
        return 1

    llm = LLMClient(config.llm, config.retry)
    executor = ToolExecutor(config.executor)
    repl: ChatREPL | None = None
    orchestrator = TurnOrchestrator(
        llm,
        executor,
        store=SessionStore(config.storage.history_path),
        config=config,
        registry=ModelRegistry(),
        on_status=lambda status: repl.on_status(status) if repl else None,
    )
    repl = ChatREPL(orchestrator)
    orchestrator.refresh_models()

    try:
        repl.loop()
    finally:
        orchestrator.close()
        executor.processes.terminate_all()
        executor.close()
        llm.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
