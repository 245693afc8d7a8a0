"""Conversation persistence: one JSON document per session."""

import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50
DEFAULT_LIST_LIMIT = 20

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def default_history_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "skiff" / "history"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_session_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass
class SessionRecord:
    id: str
    title: str = DEFAULT_TITLE
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    working_directory: str = ""
    messages: list[dict] = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "workingDirectory": self.working_directory,
            "messages": self.messages,
        }

    @classmethod
    def from_json(cls, data: dict) -> "SessionRecord":
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_TITLE,
            created_at=data.get("createdAt") or _now(),
            updated_at=data.get("updatedAt") or _now(),
            working_directory=data.get("workingDirectory", ""),
            messages=list(data.get("messages") or []),
        )

    def derive_title(self) -> None:
        """Title the session after its first user message, once."""
        if self.title != DEFAULT_TITLE:
            return
        for msg in self.messages:
            if msg.get("role") == "user" and isinstance(msg.get("content"), str):
                text = msg["content"].strip()
                if not text:
                    continue
                if len(text) > TITLE_MAX_CHARS:
                    text = text[:TITLE_MAX_CHARS] + "..."
                self.title = text
                return


class SessionStore:
    """Saves and loads SessionRecords under a history directory."""

    def __init__(self, history_dir: str | Path | None = None):
        self.history_dir = Path(history_dir) if history_dir else default_history_dir()

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id):
            raise ValueError(f"invalid session id: {session_id!r}")
        return self.history_dir / f"{session_id}.json"

    def create(self, working_directory: str) -> SessionRecord:
        record = SessionRecord(id=_new_session_id(), working_directory=working_directory)
        self.save(record)
        return record

    def save(self, record: SessionRecord) -> None:
        """Write the record atomically, bumping updated_at."""
        self.history_dir.mkdir(parents=True, exist_ok=True)
        record.updated_at = _now()
        record.derive_title()

        path = self._path(record.id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record.to_json(), f, ensure_ascii=False, indent=2)
            f.write("\n")
        os.replace(tmp_path, path)

    def load(self, session_id: str) -> SessionRecord | None:
        try:
            path = self._path(session_id)
        except ValueError:
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return SessionRecord.from_json(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("unreadable session file %s: %s", path, e)
            return None

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[SessionRecord]:
        """Sessions ordered by last update, newest first."""
        if not self.history_dir.is_dir():
            return []
        records = []
        for path in self.history_dir.glob("*.json"):
            record = self.load(path.stem)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records[:limit]

    def latest(self) -> SessionRecord | None:
        records = self.list(limit=1)
        return records[0] if records else None

    def delete(self, session_id: str) -> bool:
        try:
            self._path(session_id).unlink()
        except (ValueError, FileNotFoundError):
            return False
        return True
