"""Session store for dingtalk-connector.

The reply pipeline links each bot account to one host-application session
and records every turn into it. The host provides the store; this module
defines the interface plus a JSON-file implementation used by the CLI.

Each session is one JSON file holding metadata (title, provider, cwd,
timestamps, status) and the list of recorded entries.
"""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger
from pydantic import BaseModel, Field


class SessionMetadata(BaseModel):
    """Session metadata model."""

    title: str
    """Display title, e.g. ``[钉钉] 小助手``"""

    account_id: str
    """Bot account this session belongs to"""

    provider: str = "claude"
    model: str = ""
    cwd: str = ""

    id: str = ""
    """Assigned by the store on creation"""

    status: str = "idle"

    created_at: str = ""
    """ISO format creation timestamp"""

    last_active: str = ""
    """ISO format last active timestamp"""

    message_count: int = 0
    """Number of recorded entries"""


class SessionStore(Protocol):
    """Host-provided session collaborator."""

    def create_session(self, meta: SessionMetadata) -> str:
        """Create a session and return its id."""
        ...

    def record_message(self, session_id: str, entry: dict[str, Any]) -> None:
        ...

    def update_session(
        self,
        session_id: str,
        title: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        ...


class JsonSessionStore:
    """Stores sessions as JSON files in a directory.

    Example:
        >>> store = JsonSessionStore(Path("/tmp/sessions"))
        >>> sid = store.create_session(SessionMetadata(title="[钉钉] Bot", account_id="a1"))
        >>> store.record_message(sid, {"type": "user_prompt", "prompt": "hi"})
    """

    def __init__(self, session_dir: Path):
        self.session_dir = Path(session_dir)
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def get_session_file(self, session_id: str) -> Path:
        return self.session_dir / f"{session_id}.json"

    def _load(self, session_id: str) -> Optional[dict]:
        path = self.get_session_file(session_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load session {session_id}: {e}")
            return None

    def _save(self, session_id: str, data: dict) -> None:
        path = self.get_session_file(session_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    def create_session(self, meta: SessionMetadata) -> str:
        """Create a new session file.

        Args:
            meta: Initial metadata; ``id`` and timestamps are filled in.

        Returns:
            The new session id.
        """
        now = datetime.now(timezone.utc).isoformat()
        session_id = meta.id or uuid.uuid4().hex
        meta = meta.model_copy(update={"id": session_id, "created_at": now, "last_active": now})
        self._save(session_id, {"meta": meta.model_dump(), "messages": []})
        logger.debug(f"Session created: {session_id} ({meta.title})")
        return session_id

    def get_session(self, session_id: str) -> Optional[SessionMetadata]:
        data = self._load(session_id)
        if data is None:
            return None
        try:
            return SessionMetadata(**data.get("meta", {}))
        except ValueError:
            return None

    def get_messages(self, session_id: str) -> list[dict]:
        data = self._load(session_id)
        return list(data.get("messages", [])) if data else []

    def record_message(self, session_id: str, entry: dict[str, Any]) -> None:
        data = self._load(session_id)
        if data is None:
            logger.warning(f"record_message: unknown session {session_id}")
            return
        data.setdefault("messages", []).append(entry)
        meta = data.setdefault("meta", {})
        meta["message_count"] = len(data["messages"])
        meta["last_active"] = datetime.now(timezone.utc).isoformat()
        self._save(session_id, data)

    def update_session(
        self,
        session_id: str,
        title: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        data = self._load(session_id)
        if data is None:
            logger.warning(f"update_session: unknown session {session_id}")
            return
        meta = data.setdefault("meta", {})
        if title is not None:
            meta["title"] = title
        if status is not None:
            meta["status"] = status
        self._save(session_id, data)

    def list_sessions(self) -> list[dict]:
        """All session metadata, most recently active first."""
        sessions = []
        for path in self.session_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                continue
            sessions.append(data.get("meta", {}))
        sessions.sort(key=lambda s: s.get("last_active", ""), reverse=True)
        return sessions
