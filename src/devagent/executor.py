"""
Tool Executor - runs one parsed tool action against the local machine.

execute() never raises. Every failure (safety denial, missing file,
binary content, timeout, network error) comes back as descriptive text, so
the turn loop can forward any outcome to the model the same way.

Every blocking step has an explicit upper bound: commands are killed after
command_timeout, web requests run on a worker and are abandoned after a
deadline, and server launches are only watched for a short grace period.
"""

import html
import logging
import os
import re
import signal
import socket
import subprocess
import tempfile
import threading
import uuid
import webbrowser
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote, urlsplit

import httpx
from bs4 import BeautifulSoup

from devagent.config import ExecutorConfig
from devagent.safety import check_path, validate_command
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

SEARCH_URL = "https://html.duckduckgo.com/html/"
SEARCH_RESULT_LIMIT = 6
FETCH_CHAR_LIMIT = 5000
BINARY_SNIFF_BYTES = 1024
SERVER_OUTPUT_PREVIEW = 500
KILL_GRACE_SECONDS = 5.0
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/14.1.2 Safari/605.1.15"
)

SERVER_PATTERNS: tuple[str, ...] = (
    "npm run dev", "npm start", "npm run start",
    "yarn dev", "yarn start",
    "pnpm dev", "pnpm start",
    "npx next dev", "next dev",
    "python -m http.server", "python3 -m http.server",
    "flask run", "uvicorn", "gunicorn",
    "node server", "nodemon",
    "php -s", "ruby -run",
)

GIT_STATE_COMMANDS: tuple[str, ...] = (
    "git checkout", "git branch", "git switch", "git init",
    "git commit", "git add", "git reset", "git restore",
)

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})

_PORT_PATTERNS = (
    re.compile(r"--port[=\s]*(\d+)"),
    re.compile(r"-p\s*(\d+)"),
    re.compile(r":(\d{4,5})\b"),
    re.compile(r"http\.server\s+(\d+)"),
)
_WHITESPACE_RE = re.compile(r"\s+")


# =============================================================================
# Command classification helpers
# =============================================================================

def is_server_command(command: str) -> bool:
    """True for dev-server launches that are not expected to exit."""
    lowered = command.lower()
    return any(pattern in lowered for pattern in SERVER_PATTERNS)


def is_git_state_command(command: str) -> bool:
    return any(pattern in command for pattern in GIT_STATE_COMMANDS)


def detect_port(command: str) -> int:
    """Best-effort port a server command will listen on."""
    for pattern in _PORT_PATTERNS:
        match = pattern.search(command)
        if match:
            return int(match.group(1))
    if "http.server" in command:
        return 8000
    return 3000


def is_port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def strip_tags(markup: str) -> str:
    """Visible text of an HTML document, whitespace collapsed."""
    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()


def clean_search_link(link: str) -> str:
    """Unwrap DuckDuckGo redirect links to the target URL."""
    link = html.unescape(link)
    for prefix in ("//duckduckgo.com/l/?uddg=", "https://duckduckgo.com/l/?uddg="):
        if link.startswith(prefix):
            target = link[len(prefix):]
            target = target.split("&rut=", 1)[0]
            return unquote(target)
    return link


def parse_search_results(markup: str, limit: int = SEARCH_RESULT_LIMIT) -> list[dict[str, str]]:
    """Scrape title/link/snippet from DuckDuckGo's HTML results page."""
    soup = BeautifulSoup(markup, "html.parser")
    results = []
    for block in soup.find_all("div", class_="results_links", limit=limit):
        title_elem = block.find("a", class_="result__a")
        if title_elem is None or not title_elem.get("href"):
            continue
        link = clean_search_link(title_elem["href"])
        title = title_elem.get_text(" ", strip=True) or "No Title"
        snippet_elem = block.find(class_="result__snippet")
        snippet = snippet_elem.get_text(" ", strip=True) if snippet_elem else ""
        if link:
            results.append({"title": title, "url": link, "snippet": snippet})
    return results


# =============================================================================
# Background processes
# =============================================================================

class ProcessRegistry:
    """
    Long-running server processes started by the terminal tool.

    Each entry is removed by a watcher thread when its process exits, so
    the registry only ever holds live (or just-exited) processes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: dict[str, subprocess.Popen] = {}

    def register(self, process: subprocess.Popen) -> str:
        process_id = str(uuid.uuid4())
        with self._lock:
            self._processes[process_id] = process

        def _watch() -> None:
            process.wait()
            self.remove(process_id)
            logger.debug(f"Cleaned up terminated process: {process_id}")

        threading.Thread(target=_watch, name=f"server-{process_id[:8]}", daemon=True).start()
        return process_id

    def remove(self, process_id: str) -> subprocess.Popen | None:
        with self._lock:
            return self._processes.pop(process_id, None)

    def get(self, process_id: str) -> subprocess.Popen | None:
        with self._lock:
            return self._processes.get(process_id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    def terminate_all(self) -> None:
        """Stop every tracked server (used on shutdown)."""
        with self._lock:
            processes = list(self._processes.values())
        for process in processes:
            _terminate(process)

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)


def _terminate(process: subprocess.Popen) -> None:
    """Terminate a shell and its children, escalating to kill."""
    if process.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
        process.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
        process.wait()
    except ProcessLookupError:
        pass


class _OutputCollector:
    """
    Drains a process's combined stdout/stderr on a reader thread.

    After discard() the thread keeps reading, so the child never blocks on
    a full pipe, but nothing more is kept.
    """

    def __init__(self, process: subprocess.Popen) -> None:
        self._chunks: list[bytes] = []
        self._discarding = False
        self._lock = threading.Lock()
        self._stream = process.stdout
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        if self._stream is None:
            return
        try:
            while True:
                chunk = self._stream.read1(4096)
                if not chunk:
                    break
                with self._lock:
                    if not self._discarding:
                        self._chunks.append(chunk)
        except (OSError, ValueError):
            pass

    def join(self, timeout: float) -> None:
        self._thread.join(timeout)

    def text(self) -> str:
        with self._lock:
            data = b"".join(self._chunks)
        return data.decode("utf-8", errors="replace")

    def discard(self) -> None:
        """Drop what was collected and ignore all further output."""
        with self._lock:
            self._discarding = True
            self._chunks.clear()


# =============================================================================
# Executor
# =============================================================================

class ToolExecutor:
    """
    Executes tool actions for the turn loop.

    Args:
        config: Working directory, safety mode and time limits
        on_git_state_change: Called on a background thread after a command
            that may change repository state (commit, checkout, ...)
        opener: Opens a URL in the user's browser
        http_client: Optional httpx client for web and port checks
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        on_git_state_change: Callable[[], None] | None = None,
        opener: Callable[[str], Any] = webbrowser.open,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.config = config or ExecutorConfig.from_env()
        self.on_git_state_change = on_git_state_change
        self.opener = opener
        self.processes = ProcessRegistry()
        self._http = http_client or httpx.Client(
            follow_redirects=True,
            headers={"User-Agent": BROWSER_USER_AGENT},
        )
        self._network = ThreadPoolExecutor(max_workers=2, thread_name_prefix="devagent-net")

    @property
    def working_dir(self) -> Path:
        return self.config.working_dir

    def execute(self, action: ToolAction) -> str:
        """Run ``action`` and describe the outcome. Never raises."""
        logger.info(f"Executing tool: {action.description}")
        try:
            if isinstance(action, Terminal):
                return self._run_terminal(action.command)
            if isinstance(action, ReadFile):
                return self._read_file(action.path)
            if isinstance(action, WriteFile):
                return self._write_file(action.path, action.content)
            if isinstance(action, FetchWeb):
                return self._fetch_web(action.url)
            if isinstance(action, SearchWeb):
                return self._search_web(action.query)
            if isinstance(action, OpenURL):
                return self._open_url(action.url)
            if isinstance(action, CheckServerStatus):
                return self._check_server(action.port)
            return f"Error: Unsupported tool action {action!r}"
        except Exception as e:
            logger.exception(f"Tool {action.description} failed")
            return f"Error: {e}"

    # -------------------------------------------------------------------------
    # Terminal
    # -------------------------------------------------------------------------

    def _run_terminal(self, command: str) -> str:
        if self.config.safety_enabled:
            decision = validate_command(command)
            if not decision.allowed:
                return (
                    f"Safety Mode Blocked: {decision.reason or 'Command not allowed'}\n\n"
                    "To run this command, disable Safety Mode."
                )

        server = is_server_command(command)
        port = detect_port(command) if server else 0
        # Checked before launch so our own server can't look like a conflict.
        port_was_in_use = server and is_port_in_use(port)

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=self.working_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            return f"Command failed: {e}"

        collector = _OutputCollector(process)
        if server:
            return self._watch_server(command, process, collector, port, port_was_in_use)

        timeout = self.config.command_timeout
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate(process)
            collector.join(timeout=1.0)
            logger.warning(f"Command timed out after {timeout:g}s: {command}")
            return f"Command timed out after {int(timeout)}s. Partial output:\n{collector.text()}"

        # Background children may keep the pipe open; don't wait on them.
        collector.join(timeout=2.0)
        output = collector.text()

        if is_git_state_command(command):
            self._notify_git_state_change()

        return output if output else "(no output)"

    def _watch_server(
        self,
        command: str,
        process: subprocess.Popen,
        collector: _OutputCollector,
        port: int,
        port_was_in_use: bool,
    ) -> str:
        try:
            process.wait(timeout=self.config.server_grace_period)
        except subprocess.TimeoutExpired:
            pass

        if process.poll() is None:
            process_id = self.processes.register(process)
            initial = collector.text()[:SERVER_OUTPUT_PREVIEW] or "(Server is starting...)"
            # The server outlives this call; keep draining its pipe without buffering.
            collector.discard()
            logger.info(f"Server started on port {port} (process {process_id})")
            return (
                "Server started successfully!\n\n"
                f"The development server is now running at: http://localhost:{port}\n\n"
                f"Initial output:\n```\n{initial}\n```\n\n"
                "The server will continue running in the background. "
                "Do not wait for it to exit.\n\n"
                f"Check status with the check_server tool (port {port})."
            )

        collector.join(timeout=1.0)
        output = collector.text()
        lowered = output.lower()
        conflict = (
            port_was_in_use
            or "address already in use" in lowered
            or "eaddrinuse" in lowered
            or ("port" in lowered and "already" in lowered)
        )
        if conflict:
            return (
                f"Port {port} is already in use!\n\n"
                "Another process is using this port. Options:\n"
                f"1. Use a different port: {command} --port {port + 1}\n"
                f"2. Find what's using the port: lsof -i :{port}\n\n"
                f"Original error:\n```\n{output[:300]}\n```"
            )
        return f"Server failed to start:\n```\n{output}\n```"

    def _notify_git_state_change(self) -> None:
        callback = self.on_git_state_change
        if callback is None:
            return

        def _run() -> None:
            try:
                callback()
            except Exception:
                logger.exception("Git status refresh failed")

        threading.Thread(target=_run, name="git-refresh", daemon=True).start()

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def _resolve(self, path: str) -> Path:
        return self.working_dir / Path(path).expanduser()

    def _read_file(self, path: str) -> str:
        if self.config.safety_enabled:
            decision = check_path(path)
            if not decision.allowed:
                return f"Error: {decision.reason}"

        file_path = self._resolve(path)
        if not file_path.exists():
            return f"Error: File not found at {path}"
        if file_path.is_dir():
            return f"Error: {path} is a directory, not a file"

        try:
            size = file_path.stat().st_size
            with file_path.open("rb") as handle:
                if size > self.config.max_read_bytes:
                    preview = handle.read(self.config.large_file_preview_bytes)
                    if b"\0" in preview[:BINARY_SNIFF_BYTES]:
                        return "Error: File is too large and appears to be binary."
                    try:
                        # A multibyte character may be cut at the boundary.
                        text = preview.decode("utf-8", errors="strict")
                    except UnicodeDecodeError as e:
                        if e.start < len(preview) - 3:
                            return "Error: File is too large and appears to be binary."
                        text = preview[:e.start].decode("utf-8")
                    return (
                        f"File is too large ({size // 1024} KB). "
                        f"Showing first {self.config.large_file_preview_bytes // 1000}KB:\n\n{text}"
                    )

                head = handle.read(BINARY_SNIFF_BYTES)
                if b"\0" in head:
                    return (
                        "Error: File appears to be binary (image, executable, etc.) "
                        "and cannot be read as text."
                    )
                data = head + handle.read()
        except OSError as e:
            return f"Error reading file: {e}"

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return "Error: File is not valid UTF-8 text and cannot be read."

    def _write_file(self, path: str, content: str) -> str:
        if self.config.safety_enabled:
            decision = check_path(path)
            if not decision.allowed:
                return f"Error: {decision.reason}"

        file_path = self._resolve(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            mode = file_path.stat().st_mode & 0o777 if file_path.exists() else 0o644
            fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=f".{file_path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.chmod(tmp_name, mode)
                os.replace(tmp_name, file_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            return f"Error writing file: {e}"

        return f"Successfully wrote to {path}"

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    def _bounded(self, func: Callable[[], str], deadline: float, on_timeout: str) -> str:
        """Run ``func`` on the network pool, giving up after ``deadline`` seconds."""
        future = self._network.submit(func)
        try:
            return future.result(timeout=deadline)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(on_timeout)
            return on_timeout

    def _fetch_web(self, url: str) -> str:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            return "Error: Invalid URL"

        def _fetch() -> str:
            try:
                response = self._http.get(url, timeout=self.config.web_timeout)
            except httpx.RequestError as e:
                return f"Error fetching: {e}"
            text = strip_tags(response.text)
            return text[:FETCH_CHAR_LIMIT]

        deadline = self.config.web_deadline
        result = self._bounded(
            _fetch,
            deadline,
            f"Request timed out after {deadline:g} seconds. The server may be slow or unresponsive.",
        )
        return result or "No content received"

    def _search_web(self, query: str) -> str:
        if not query.strip():
            return "Error: Invalid Query"

        def _search() -> str:
            try:
                response = self._http.get(
                    SEARCH_URL,
                    params={"q": query},
                    timeout=self.config.web_timeout,
                )
            except httpx.RequestError as e:
                return f"Search Error: {e}"

            results = parse_search_results(response.text)
            if not results:
                return f"No search results found for query: {query}"
            formatted = [
                f"### {r['title']}\nURL: {r['url']}\nSnippet: {r['snippet']}\n"
                for r in results
            ]
            return "Web Search Results:\n\n" + "\n".join(formatted)

        deadline = self.config.web_deadline
        return self._bounded(
            _search,
            deadline,
            f"Search timed out after {deadline:g} seconds. Please try again.",
        )

    def _probe_port(self, port: int) -> tuple[str, str]:
        """
        HEAD http://localhost:<port>.

        Returns (state, detail) where state is "up", "down", "error" or
        "timeout" and detail is the status code or error text.
        """
        url = f"http://localhost:{port}"

        def _probe() -> tuple[str, str]:
            try:
                response = self._http.head(url, timeout=self.config.port_probe_timeout)
            except (httpx.ConnectError, httpx.TimeoutException):
                return ("down", "")
            except httpx.RequestError as e:
                return ("error", str(e))
            return ("up", str(response.status_code))

        future = self._network.submit(_probe)
        try:
            return future.result(timeout=self.config.port_probe_deadline)
        except FutureTimeoutError:
            future.cancel()
            return ("timeout", "")

    def _check_server(self, port: int) -> str:
        if not 0 < port < 65536:
            return f"Error: Invalid port: {port}"

        state, detail = self._probe_port(port)
        if state == "up":
            return (
                f"Server on port {port} is running!\n\n"
                f"- Status: {detail}\n"
                f"- URL: http://localhost:{port}\n\n"
                "Ready to open in browser."
            )
        if state == "down":
            return (
                f"Server on port {port} is not responding\n\n"
                "Possible causes:\n"
                "- No server running on this port\n"
                "- Server is still starting up\n"
                "- Server crashed or was stopped\n\n"
                f"To check: lsof -i :{port}"
            )
        if state == "timeout":
            return f"Server check timed out. Port {port} may not be responding."
        return f"Connection error: {detail}"

    def _open_url(self, url: str) -> str:
        parts = urlsplit(url)
        if not parts.scheme or not (parts.netloc or parts.scheme == "file"):
            return f"Error: Invalid URL: {url}"

        try:
            port = parts.port
        except ValueError:
            return f"Error: Invalid URL: {url}"
        is_local = (parts.hostname or "") in LOOPBACK_HOSTS

        if is_local and port is not None:
            state, _ = self._probe_port(port)
            if state in ("down", "timeout"):
                return (
                    f"Cannot open {url}\n\n"
                    f"The development server on port {port} is not running yet.\n\n"
                    "Suggestions:\n"
                    "1. Start the server first (e.g. npm run dev)\n"
                    f"2. Check whether port {port} is in use: lsof -i :{port}\n"
                    "3. Wait a few seconds for the server to start"
                )

        if self.opener(url) is False:
            return f"Error: Could not open {url}: no browser available"

        if is_local:
            return (
                f"Opened {url} in your default browser\n\n"
                "Development server detected - refresh the browser if the page doesn't load immediately."
            )
        return f"Opened {url} in your default browser"

    def close(self) -> None:
        """Release network resources. Background servers keep running."""
        self._network.shutdown(wait=False, cancel_futures=True)
        self._http.close()
