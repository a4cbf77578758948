"""
Tool call extraction from free-form model output.

The model is instructed to answer with a single JSON object when it wants
a tool, e.g. ``{"tool": "read_file", "path": "a.txt"}``, usually wrapped in
a fenced code block and sometimes surrounded by prose. We take the span
from the first ``{`` to the last ``}`` and decode it strictly. Anything
that does not decode to a known tool with its required fields is simply
not a tool call.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

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

logger = logging.getLogger(__name__)


def _str_field(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    return value if isinstance(value, str) else None


def _port_field(payload: dict[str, Any]) -> int | None:
    value = payload.get("port")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _terminal(payload: dict[str, Any]) -> ToolAction | None:
    command = _str_field(payload, "command")
    return Terminal(command) if command is not None else None


def _read_file(payload: dict[str, Any]) -> ToolAction | None:
    path = _str_field(payload, "path")
    return ReadFile(path) if path is not None else None


def _write_file(payload: dict[str, Any]) -> ToolAction | None:
    path = _str_field(payload, "path")
    content = _str_field(payload, "content")
    if path is None or content is None:
        return None
    return WriteFile(path, content)


def _fetch_web(payload: dict[str, Any]) -> ToolAction | None:
    url = _str_field(payload, "url")
    return FetchWeb(url) if url is not None else None


def _search_web(payload: dict[str, Any]) -> ToolAction | None:
    query = _str_field(payload, "query")
    return SearchWeb(query) if query is not None else None


def _open_url(payload: dict[str, Any]) -> ToolAction | None:
    url = _str_field(payload, "url")
    return OpenURL(url) if url is not None else None


def _check_server(payload: dict[str, Any]) -> ToolAction | None:
    port = _port_field(payload)
    return CheckServerStatus(port) if port is not None else None


TOOL_BUILDERS: dict[str, Callable[[dict[str, Any]], ToolAction | None]] = {
    "terminal": _terminal,
    "read_file": _read_file,
    "write_file": _write_file,
    "fetch_web": _fetch_web,
    "search_web": _search_web,
    "open_url": _open_url,
    "open_browser": _open_url,
    "check_server": _check_server,
    "check_port": _check_server,
}


def extract_json_span(text: str) -> str | None:
    """Return the text between the first '{' and the last '}', inclusive."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    return text[start:end + 1]


def looks_like_tool_call(text: str) -> bool:
    """Cheap pre-check before attempting a full parse."""
    return '"tool"' in text


def parse_tool_action(text: str) -> ToolAction | None:
    """
    Extract the single tool action in ``text``, if any.

    Returns None when there is no JSON object, it does not decode (two
    sibling objects produce an undecodable merged span and land here too),
    the ``tool`` field is missing or unknown, or a required field is absent.
    """
    span = extract_json_span(text)
    if span is None:
        return None

    try:
        payload = json.loads(span)
    except json.JSONDecodeError as e:
        logger.debug(f"Failed to decode tool JSON: {e}")
        return None

    if not isinstance(payload, dict):
        return None

    tool = payload.get("tool")
    if not isinstance(tool, str):
        return None

    builder = TOOL_BUILDERS.get(tool)
    if builder is None:
        logger.debug(f"Unrecognized tool: {tool}")
        return None

    action = builder(payload)
    if action is None:
        logger.debug(f"Tool '{tool}' is missing a required field")
    return action
