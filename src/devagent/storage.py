"""
SessionStore - JSON-file persistence for chat sessions.

All sessions live in one JSON document. Saving is best-effort: a failed
write is logged and the in-memory sessions stay authoritative. Loading a
missing or corrupted file yields an empty history.

Usage:
    store = SessionStore("~/.devagent/history/sessions.json")

    # Save all sessions
    store.save(sessions)

    # Load them back
    sessions = store.load()
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from devagent.types import ChatSession

logger = logging.getLogger(__name__)


class SessionStore:
    """Saves and loads the list of chat sessions."""

    def __init__(self, path: str | Path = "~/.devagent/history/sessions.json"):
        """
        Initialize the session store.

        Args:
            path: JSON file holding every session. Parent directories are
                created on first save.
        """
        self.path = Path(path).expanduser()

    def save(self, sessions: list[ChatSession]) -> bool:
        """
        Write every session to disk atomically.

        Returns:
            True if the file was written
        """
        data = [session.to_dict() for session in sessions]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".sessions.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save chat history to {self.path}: {e}")
            return False

        logger.debug(f"Saved {len(sessions)} sessions to {self.path}")
        return True

    def load(self) -> list[ChatSession]:
        """
        Load sessions from disk.

        Returns:
            The saved sessions, or an empty list if the file is missing or
            cannot be parsed
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            return [ChatSession.from_dict(item) for item in data]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load chat history from {self.path}: {e}")
            return []

    def clean_old_sessions(
        self, sessions: list[ChatSession], days: int
    ) -> list[ChatSession]:
        """
        Drop sessions not modified in the last ``days`` days and persist the rest.

        Returns:
            The sessions that were kept
        """
        if days <= 0:
            return sessions

        cutoff = datetime.now() - timedelta(days=days)
        kept = [s for s in sessions if s.last_modified >= cutoff]
        removed = len(sessions) - len(kept)
        if removed:
            logger.info(f"Removed {removed} sessions older than {days} days")
            self.save(kept)
        return kept
