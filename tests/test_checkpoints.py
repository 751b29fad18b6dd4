from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from cerberus_mcp.errors import VersionControlError
from cerberus_mcp.execution.checkpoints import (
    FakeVersionControl,
    GitVersionControl,
    snapshot_tree,
    tree_digest,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def populate(root: Path) -> None:
    (root / "src").mkdir(parents=True, exist_ok=True)
    (root / "src" / "app.py").write_text("print('hello')\n", encoding="utf-8")
    (root / "README.md").write_text("target\n", encoding="utf-8")


def scribble(root: Path) -> None:
    (root / "src" / "app.py").write_text("print('changed')\n", encoding="utf-8")
    (root / "README.md").unlink()
    (root / "notes").mkdir()
    (root / "notes" / "new.txt").write_text("agent output\n", encoding="utf-8")


def test_fake_rollback_restores_exact_tree(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    vc = FakeVersionControl()
    before = tree_digest(repo)

    async def scenario() -> None:
        checkpoint = await vc.create_checkpoint(repo, label="recon")
        scribble(repo)
        assert tree_digest(repo) != before
        await vc.rollback(checkpoint)

    asyncio.run(scenario())

    assert tree_digest(repo) == before
    assert not (repo / "notes").exists()


def test_fake_restore_unknown_checkpoint(tmp_path: Path) -> None:
    with pytest.raises(VersionControlError):
        asyncio.run(FakeVersionControl().restore(tmp_path, "missing"))


def test_snapshot_skips_git_directory(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")

    assert list(snapshot_tree(tmp_path)) == ["file.txt"]


@requires_git
def test_git_rollback_restores_exact_tree(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    vc = GitVersionControl(tmp_path / "state")
    before = tree_digest(repo)

    async def scenario() -> None:
        checkpoint = await vc.create_checkpoint(repo, label="recon")
        assert not checkpoint.isolated
        assert checkpoint.workdir == repo.resolve()
        scribble(repo)
        await vc.rollback(checkpoint)

    asyncio.run(scenario())

    assert tree_digest(repo) == before


@requires_git
def test_git_commit_then_restore_earlier_checkpoint(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    vc = GitVersionControl(tmp_path / "state")
    before = tree_digest(repo)

    async def scenario() -> str:
        first = await vc.create_checkpoint(repo, label="recon")
        (repo / "recon.md").write_text("findings\n", encoding="utf-8")
        await vc.commit(first, message="recon done")
        await vc.create_checkpoint(repo, label="report")
        (repo / "report.md").write_text("report\n", encoding="utf-8")
        await vc.restore(repo, first.id)
        return first.id

    asyncio.run(scenario())

    assert tree_digest(repo) == before
    with pytest.raises(VersionControlError):
        asyncio.run(vc.restore(repo, "0" * 40))


@requires_git
def test_git_isolated_checkpoints_merge_or_discard(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    vc = GitVersionControl(tmp_path / "state")

    async def scenario() -> None:
        good = await vc.create_checkpoint(repo, label="x1", isolated=True)
        bad = await vc.create_checkpoint(repo, label="x2", isolated=True)
        assert good.isolated and bad.isolated
        assert good.workdir != repo.resolve()
        (good.workdir / "x1.md").write_text("x1 findings\n", encoding="utf-8")
        (bad.workdir / "x2.md").write_text("x2 garbage\n", encoding="utf-8")
        await vc.commit(good, message="x1 done")
        await vc.rollback(bad)
        assert not good.workdir.exists()
        assert not bad.workdir.exists()

    asyncio.run(scenario())

    assert (repo / "x1.md").read_text(encoding="utf-8") == "x1 findings\n"
    assert not (repo / "x2.md").exists()


@requires_git
def test_state_dir_inside_repo_survives_rollback(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    state = repo / ".cerberus"
    state.mkdir()
    (state / "audit.jsonl").write_text("{}\n", encoding="utf-8")
    vc = GitVersionControl(state)

    async def scenario() -> None:
        checkpoint = await vc.create_checkpoint(repo, label="recon")
        (state / "audit.jsonl").write_text("{}\n{}\n", encoding="utf-8")
        (repo / "junk.txt").write_text("junk", encoding="utf-8")
        await vc.rollback(checkpoint)

    asyncio.run(scenario())

    assert (state / "audit.jsonl").read_text(encoding="utf-8") == "{}\n{}\n"
    assert not (repo / "junk.txt").exists()


def test_fake_isolated_checkpoints_merge_only_member_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    vc = FakeVersionControl()
    assert vc.isolates_parallel

    async def scenario() -> None:
        kept = await vc.create_checkpoint(repo, label="x1", isolated=True)
        dropped = await vc.create_checkpoint(repo, label="x2", isolated=True)
        assert kept.isolated and kept.workdir != repo
        (kept.workdir / "x1.txt").write_text("x1\n", encoding="utf-8")
        (kept.workdir / "README.md").unlink()
        scribble_target = dropped.workdir / "src" / "app.py"
        scribble_target.write_text("print('broken')\n", encoding="utf-8")
        (repo / "sibling.txt").write_text("merged earlier\n", encoding="utf-8")

        await vc.commit(kept, message="x1 done")
        await vc.rollback(dropped)
        assert not kept.workdir.exists() and not dropped.workdir.exists()

    asyncio.run(scenario())

    assert snapshot_tree(repo) == {
        "sibling.txt": b"merged earlier\n",
        "src/app.py": b"print('hello')\n",
        "x1.txt": b"x1\n",
    }


def test_fake_without_isolation_shares_the_repository(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    populate(repo)
    vc = FakeVersionControl(isolate_parallel=False)

    checkpoint = asyncio.run(vc.create_checkpoint(repo, label="x1", isolated=True))

    assert not vc.isolates_parallel
    assert not checkpoint.isolated
    assert checkpoint.workdir == repo
