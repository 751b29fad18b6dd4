from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from cerberus_mcp.errors import CorruptedStateError, LockTimeoutError, SessionNotFoundError
from cerberus_mcp.state import Session, SessionMutex, SessionStore


def make_session(session_id: str = "s1") -> Session:
    return Session(
        id=session_id,
        web_url="https://target.example",
        repo_path="/tmp/repo",
        created_at="2024-05-01T12:00:00+00:00",
        updated_at="2024-05-01T12:00:00+00:00",
    )


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, SessionMutex())
    session = make_session()

    store.save(session)

    assert store.load("s1") == session
    raw = store.path_for("s1").read_text(encoding="utf-8")
    assert raw.endswith("\n")
    assert json.loads(raw)["web_url"] == "https://target.example"
    assert store.list_sessions() == ["s1"]


def test_render_is_canonical(tmp_path: Path) -> None:
    session = make_session()

    assert SessionStore.render(session) == SessionStore.render(session.model_copy(deep=True))


def test_save_leaves_no_temporary_files(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, SessionMutex())
    store.save(make_session())
    store.save(make_session())

    assert sorted(path.name for path in tmp_path.iterdir()) == ["s1.json"]


def test_load_missing_and_corrupted(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, SessionMutex())

    with pytest.raises(SessionNotFoundError):
        store.load("s1")

    store.path_for("s1").write_text("{ half", encoding="utf-8")
    with pytest.raises(CorruptedStateError):
        store.load("s1")


def test_concurrent_mutations_do_not_lose_updates(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, SessionMutex())
    store.save(make_session())

    async def bump(index: int) -> None:
        async def _mutation(session: Session) -> Session:
            current = session.current_phase or ""
            await asyncio.sleep(0)
            session.current_phase = current + str(index)
            return session

        await store.mutate("s1", _mutation)

    async def scenario() -> None:
        await asyncio.gather(*(bump(index) for index in range(10)))

    asyncio.run(scenario())

    assert sorted(store.load("s1").current_phase) == sorted("0123456789")


def test_mutex_times_out(tmp_path: Path) -> None:
    mutex = SessionMutex(timeout=0.05)

    async def scenario() -> None:
        async with mutex.hold("s1"):
            assert mutex.locked("s1")
            with pytest.raises(LockTimeoutError):
                async with mutex.hold("s1"):
                    pass
        assert not mutex.locked("s1")

    asyncio.run(scenario())


def test_mutex_is_per_session() -> None:
    mutex = SessionMutex(timeout=0.05)

    async def scenario() -> str:
        async with mutex.hold("s1"):
            return await mutex.with_lock("s2", lambda: "other session")

    assert asyncio.run(scenario()) == "other session"


def test_with_lock_accepts_coroutines() -> None:
    mutex = SessionMutex()

    async def critical() -> int:
        await asyncio.sleep(0)
        return 42

    assert asyncio.run(mutex.with_lock("s1", critical)) == 42
