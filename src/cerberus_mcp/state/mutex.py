"""Per-session mutual exclusion for store mutations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from ..errors import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionMutex:
    """One FIFO asyncio lock per session id, acquired with a bounded wait.

    Held only for read-modify-write of the session store; never across an agent
    call or a checkpoint operation.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "Session lock timed out",
                extra={"session_id": session_id, "timeout": self._timeout},
            )
            raise LockTimeoutError(
                f"Could not acquire lock for session {session_id} within {self._timeout}s"
            ) from exc
        try:
            yield
        finally:
            lock.release()

    async def with_lock(
        self,
        session_id: str,
        critical_section: Callable[[], T | Awaitable[T]],
    ) -> T:
        async with self.hold(session_id):
            result: Any = critical_section()
            if inspect.isawaitable(result):
                result = await result
            return result


__all__ = ["SessionMutex"]
