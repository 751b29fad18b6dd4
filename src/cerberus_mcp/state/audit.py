"""Append-only, newline-delimited audit log per session."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from ..errors import AuditWriteError, CorruptedStateError
from .models import AuditEvent, EventKind

logger = logging.getLogger(__name__)


class AuditLog:
    """Crash-safe event journal; the source of truth for session history.

    Each event is a single JSON line written with one ``write`` call followed by
    flush and fsync. A line without its trailing newline is a torn write from a
    crash: readers skip it and the next append truncates it away.
    """

    def __init__(self, directory: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._directory = Path(directory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.jsonl"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def new_event(
        self,
        kind: EventKind,
        session_id: str,
        *,
        agent: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return AuditEvent(
            kind=kind,
            session_id=session_id,
            timestamp=self._clock().isoformat(),
            agent=agent,
            payload=payload or {},
        )

    def append(self, event: AuditEvent) -> AuditEvent:
        path = self.path_for(event.session_id)
        line = event.to_json() + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._truncate_torn_tail(path)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise AuditWriteError(
                f"Failed to append {event.kind.value} for session {event.session_id}: {exc}"
            ) from exc
        return event

    def read_all(self, session_id: str) -> Iterator[AuditEvent]:
        """Yield events in append order. Each call re-reads from the start."""

        path = self.path_for(session_id)
        if not path.exists():
            return
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            pending: str | None = None
            line_number = 0
            for raw in handle:
                if pending is not None:
                    yield self._parse(pending, session_id, path, line_number)
                pending = raw
                line_number += 1
            if pending is None:
                return
            if not pending.endswith("\n"):
                logger.warning(
                    "Skipping truncated final audit record",
                    extra={"session_id": session_id, "path": str(path), "line": line_number},
                )
                return
            try:
                yield self._parse(pending, session_id, path, line_number)
            except CorruptedStateError:
                logger.warning(
                    "Skipping unparseable final audit record",
                    extra={"session_id": session_id, "path": str(path), "line": line_number},
                )

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_sessions(self) -> list[str]:
        if not self._directory.exists():
            return []
        return sorted(path.stem for path in self._directory.glob("*.jsonl"))

    @staticmethod
    def _parse(raw: str, session_id: str, path: Path, line_number: int) -> AuditEvent:
        text = raw.strip()
        if not text:
            raise CorruptedStateError(f"Empty audit record at {path}:{line_number}")
        try:
            event = AuditEvent.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as exc:
            raise CorruptedStateError(
                f"Unreadable audit record at {path}:{line_number}: {exc}"
            ) from exc
        if event.session_id != session_id:
            raise CorruptedStateError(
                f"Audit record at {path}:{line_number} belongs to session {event.session_id}"
            )
        return event

    @staticmethod
    def _truncate_torn_tail(path: Path) -> None:
        if not path.exists():
            return
        with path.open("rb+") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            if size == 0:
                return
            handle.seek(size - 1)
            if handle.read(1) == b"\n":
                return
            data_end = size
            chunk = 4096
            while data_end > 0:
                start = max(0, data_end - chunk)
                handle.seek(start)
                block = handle.read(data_end - start)
                index = block.rfind(b"\n")
                if index != -1:
                    keep = start + index + 1
                    break
                data_end = start
            else:
                keep = 0
            logger.warning(
                "Truncating torn audit record",
                extra={"path": str(path), "dropped_bytes": size - keep},
            )
            handle.truncate(keep)
            handle.flush()
            os.fsync(handle.fileno())


__all__ = ["AuditLog"]
