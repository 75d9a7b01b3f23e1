"""
Session persistence for conversation history.

Saves and restores agent conversations so users can resume them across
process restarts, and records the pruned history whenever compaction runs.

Storage layout:
    ~/.reactor/sessions/{session_id}/
        metadata.json     — session info (model, step count, compactions, timestamps)
        history.json      — list of Message dicts (``Message.to_dict``)
        events.jsonl      — structured event log (written by EventLogWriter)
"""

import json
import logging
import os
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from .messages import Message

logger = logging.getLogger("reactor")


class SessionManager:
    """Manages session directories for conversation persistence."""

    def __init__(self, base_dir: Optional[Path] = None):
        if base_dir is None:
            from config import get_data_dir
            base_dir = get_data_dir() / "sessions"
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def generate_session_id(self) -> str:
        """Generate a unique session ID without creating any files or directories.

        Returns:
            The session_id string (format: YYYYMMDD_HHMMSS_XXXXXXXX).
        """
        return datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]

    def session_dir(self, session_id: str) -> Path:
        return self.base_dir / session_id

    def event_log_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "events.jsonl"

    def create_session(self, model_name: str = "", session_id: Optional[str] = None) -> str:
        """Create a new session directory with initial metadata on disk.

        Returns:
            The session_id string.
        """
        session_id = session_id or self.generate_session_id()
        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)

        now = datetime.now().isoformat()
        metadata = {
            "id": session_id,
            "created_at": now,
            "updated_at": now,
            "model": model_name,
            "step_count": 0,
            "message_count": 0,
            "compaction_count": 0,
            "last_summary": "",
            "last_message_preview": "",
        }
        self._write_json(session_dir / "metadata.json", metadata)
        self._write_json(session_dir / "history.json", [])
        return session_id

    def save_history(
        self,
        session_id: str,
        history: list[Message],
        metadata_updates: Optional[dict] = None,
    ) -> None:
        """Write the full conversation and merge *metadata_updates* into metadata.

        Creates the session on first save.
        """
        session_dir = self.session_dir(session_id)
        if not (session_dir / "metadata.json").exists():
            self.create_session(session_id=session_id)

        self._write_json(session_dir / "history.json", [m.to_dict() for m in history])

        metadata = self._read_json(session_dir / "metadata.json") or {}
        metadata["updated_at"] = datetime.now().isoformat()
        metadata["message_count"] = len(history)
        preview = next((m.content for m in reversed(history) if m.content), "")
        metadata["last_message_preview"] = preview[:120]
        if metadata_updates:
            metadata.update(metadata_updates)
        self._write_json(session_dir / "metadata.json", metadata)

    def compact_session(self, session_id: str, history: list[Message], summary: str = "") -> None:
        """Persist a pruned history produced by compaction.

        Bumps ``compaction_count`` and records the summary text.
        """
        metadata = self._read_json(self.session_dir(session_id) / "metadata.json") or {}
        self.save_history(
            session_id,
            history,
            metadata_updates={
                "compaction_count": metadata.get("compaction_count", 0) + 1,
                "last_summary": summary,
                "compacted_at": datetime.now().isoformat(),
            },
        )
        logger.debug("Persisted compacted history for session %s (%d messages)", session_id, len(history))

    def load_history(self, session_id: str) -> tuple[list[Message], dict]:
        """Load a session from disk.

        Returns:
            Tuple of (messages, metadata).

        Raises:
            FileNotFoundError: If the session does not exist.
        """
        session_dir = self.session_dir(session_id)
        if not session_dir.exists():
            raise FileNotFoundError(f"Session not found: {session_id}")
        raw = self._read_json(session_dir / "history.json") or []
        history = [Message.from_dict(d) for d in raw]
        metadata = self._read_json(session_dir / "metadata.json") or {}
        return history, metadata

    def load_events(self, session_id: str) -> list[dict]:
        """Structured event log of a session (empty if none was written)."""
        from .event_bus import load_event_log
        return load_event_log(self.event_log_path(session_id))

    def list_sessions(self) -> list[dict]:
        """List all sessions, sorted by updated_at descending.

        Returns:
            List of metadata dicts (with id, created_at, updated_at, etc.).
        """
        sessions = []
        for d in self.base_dir.iterdir():
            if not d.is_dir():
                continue
            meta_path = d / "metadata.json"
            if not meta_path.exists():
                continue
            try:
                meta = self._read_json(meta_path)
            except (json.JSONDecodeError, OSError):
                logger.debug("Skipping unreadable session metadata: %s", meta_path)
                continue
            if meta and "id" in meta:
                sessions.append(meta)

        sessions.sort(key=lambda m: m.get("updated_at", ""), reverse=True)
        return sessions

    def delete_session(self, session_id: str) -> bool:
        """Delete a session directory.

        Returns:
            True if deleted, False if not found.
        """
        session_dir = self.session_dir(session_id)
        if not session_dir.exists():
            return False
        shutil.rmtree(session_dir)
        return True

    def get_most_recent_session(self) -> Optional[str]:
        """Return the session_id of the most recently updated session, or None."""
        sessions = self.list_sessions()
        if not sessions:
            return None
        return sessions[0]["id"]

    # ---- Internal helpers ----

    @staticmethod
    def _write_json(path: Path, data) -> None:
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str, ensure_ascii=False)
        os.replace(tmp, path)

    @staticmethod
    def _read_json(path: Path):
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
