"""File-backed session store: a rebuildable projection of the audit log."""

from __future__ import annotations

import inspect
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ..errors import CorruptedStateError, SessionNotFoundError
from .models import Session
from .mutex import SessionMutex

Mutation = Callable[[Session], "Session | Awaitable[Session]"]


class SessionStore:
    """Persist one canonical JSON document per session.

    Writes go to a temporary sibling file that is then ``os.replace``d over the
    target, so a concurrent reader never observes a half-written document.
    """

    def __init__(self, directory: Path, mutex: SessionMutex) -> None:
        self._directory = Path(directory)
        self._mutex = mutex

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def mutex(self) -> SessionMutex:
        return self._mutex

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    @staticmethod
    def render(session: Session) -> bytes:
        payload = session.model_dump(mode="json")
        return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")

    def read_bytes(self, session_id: str) -> bytes | None:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def load(self, session_id: str) -> Session:
        data = self.read_bytes(session_id)
        if data is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        try:
            return Session.model_validate(json.loads(data))
        except (ValueError, ValidationError) as exc:
            raise CorruptedStateError(
                f"Session store for '{session_id}' is unreadable; reconcile to rebuild it"
            ) from exc

    def save(self, session: Session) -> None:
        self.write_bytes(session.id, self.render(session))

    def write_bytes(self, session_id: str, data: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(session_id)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{session_id}.", suffix=".tmp", dir=self._directory)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        finally:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)

    async def mutate(self, session_id: str, fn: Mutation) -> Session:
        """Read-modify-write under the session mutex; the only sanctioned write path."""

        async with self._mutex.hold(session_id):
            session = self.load(session_id)
            result: Any = fn(session)
            if inspect.isawaitable(result):
                result = await result
            self.save(result)
            return result

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_sessions(self) -> list[str]:
        if not self._directory.exists():
            return []
        return sorted(path.stem for path in self._directory.glob("*.json"))


__all__ = ["SessionStore"]
