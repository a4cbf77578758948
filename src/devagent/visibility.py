"""
Output visibility policy.

Decides whether a tool's raw output is worth showing to the user or
should only be forwarded to the model, which folds it into its next
answer. Errors are always shown; so is anything a user would want to
verify themselves (search results, server checks).
"""

from devagent.types import (
    CheckServerStatus,
    FetchWeb,
    OpenURL,
    ReadFile,
    SearchWeb,
    Terminal,
    ToolAction,
    WriteFile,
)

ERROR_MARKERS: tuple[str, ...] = (
    "Error:",
    "error:",
    "Failed",
    "failed",
    "Safety Mode Blocked",
    "timed out",
)

# Self-describing commands: the tool description already says it all.
# Entries ending in a space match as a prefix; the rest also match exactly.
SIMPLE_COMMAND_PREFIXES: tuple[str, ...] = (
    "rm ", "mv ", "cp ", "mkdir ", "touch ",
    "git add", "git commit -m", "git status",
    "ls", "pwd", "cd ", "echo ",
)

# Commands whose output is the point of running them.
INFORMATIVE_COMMANDS: tuple[str, ...] = (
    "npm install", "npm run", "npm start", "npm test",
    "yarn install", "yarn add", "yarn start", "yarn test",
    "pip install", "pip3 install",
    "cargo build", "cargo run", "cargo test",
    "make", "cmake",
    "docker", "kubectl",
    "git clone", "git pull", "git push", "git log", "git diff",
    "curl", "wget",
    "python", "node", "ruby", "go run",
    "jest", "mocha", "pytest",
    "eslint", "tslint", "pylint",
)


def has_error_marker(output: str) -> bool:
    return any(marker in output for marker in ERROR_MARKERS)


def is_simple_command(command: str) -> bool:
    """
    True for plain, self-describing commands such as ``ls -la`` or ``pwd``.

    ``ls`` matches as a word only, so ``lsof`` is not simple.
    """
    stripped = command.strip()
    for prefix in SIMPLE_COMMAND_PREFIXES:
        if prefix.endswith(" "):
            if stripped.startswith(prefix):
                return True
        elif stripped == prefix or stripped.startswith(prefix + " "):
            return True
    return False


def should_show_output(action: ToolAction, output: str) -> bool:
    """Return True when the raw tool output should be shown to the user."""
    if has_error_marker(output):
        return True

    if isinstance(action, Terminal):
        # "cd app && npm install" is informative even though it starts simple.
        if any(cmd in action.command for cmd in INFORMATIVE_COMMANDS):
            return True
        return not is_simple_command(action.command)

    if isinstance(action, (ReadFile, WriteFile, FetchWeb)):
        return False

    if isinstance(action, (SearchWeb, OpenURL, CheckServerStatus)):
        return True

    return True


def format_tool_result(action: ToolAction, output: str) -> str:
    """Frame tool output as the hidden user message sent back to the model."""
    if should_show_output(action, output):
        return f"Terminal Output:\n```\n{output}\n```\nAnalyze this output."
    return f"Tool executed successfully. Output: {output}"
