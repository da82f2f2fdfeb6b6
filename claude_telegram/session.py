"""Per-user Claude session ids, persisted as a single JSON file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path

log = logging.getLogger("claude_telegram")


class Session:
    """The stored conversation state for one Telegram user."""

    __slots__ = ("user_id", "session_id", "last_activity")

    def __init__(self, user_id: int, session_id: str | None = None, last_activity: float | None = None):
        self.user_id = user_id
        self.session_id = session_id
        self.last_activity = last_activity if last_activity is not None else time.time()

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, "last_activity": self.last_activity}


class SessionStore:
    """Map user id -> Claude session id, surviving restarts.

    The whole file is loaded at construction. Every mutation rewrites the
    file before returning (temp file in the same directory, then
    ``os.replace``), so a reader never sees a partial file and a crash
    loses at most the mutation in progress.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._sessions: dict[int, Session] = {}
        self._load()

    def _load(self):
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("session store %s unreadable, starting empty: %s", self.path, exc)
            return
        if not isinstance(raw, dict):
            log.warning("session store %s is not an object, starting empty", self.path)
            return
        for key, entry in raw.items():
            try:
                uid = int(key)
            except ValueError:
                continue
            if not isinstance(entry, dict):
                continue
            self._sessions[uid] = Session(
                uid,
                entry.get("session_id") or None,
                entry.get("last_activity"),
            )

    def _save(self):
        """Write every record atomically. Caller holds the lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {str(uid): s.to_dict() for uid, s in self._sessions.items()}
        fd, tmp = tempfile.mkstemp(prefix=".sessions-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    # -- Public API --

    def get(self, user_id: int) -> str | None:
        s = self._sessions.get(user_id)
        return s.session_id if s else None

    def session(self, user_id: int) -> Session | None:
        return self._sessions.get(user_id)

    def set(self, user_id: int, session_id: str):
        with self._lock:
            s = self._sessions.get(user_id)
            if s is None:
                s = self._sessions[user_id] = Session(user_id)
            s.session_id = session_id
            s.last_activity = time.time()
            self._save()

    def reset(self, user_id: int):
        """Forget the session id; the next run starts a fresh conversation."""
        with self._lock:
            s = self._sessions.get(user_id)
            if s is None:
                s = self._sessions[user_id] = Session(user_id)
            s.session_id = None
            s.last_activity = time.time()
            self._save()

    def touch(self, user_id: int):
        with self._lock:
            s = self._sessions.get(user_id)
            if s is None:
                s = self._sessions[user_id] = Session(user_id)
            s.last_activity = time.time()
            self._save()

    def __len__(self) -> int:
        return len(self._sessions)
