"""Version-control checkpoints taken before each agent attempt."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from ..errors import VersionControlError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

_GIT_IDENTITY = ("-c", "user.name=Cerberus", "-c", "user.email=cerberus@localhost")


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Immutable snapshot id plus the working directory the agent operates in."""

    id: str
    repo_path: Path
    workdir: Path
    isolated: bool = False
    label: str = ""


class VersionControl(Protocol):
    """Checkpoint capability injected into the checkpoint manager."""

    @property
    def isolates_parallel(self) -> bool:
        """Whether parallel members get their own working directory."""
        ...

    async def create_checkpoint(
        self, repo_path: Path, *, label: str, isolated: bool = False
    ) -> Checkpoint:
        ...

    async def commit(self, checkpoint: Checkpoint, *, message: str) -> str:
        ...

    async def rollback(self, checkpoint: Checkpoint) -> None:
        ...

    async def restore(self, repo_path: Path, checkpoint_id: str) -> None:
        ...


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitVersionControl:
    """Checkpoints as git commits; parallel members get detached worktrees.

    Operations on the main working tree are serialized by a per-repository lock.
    An isolated checkpoint is rolled back by discarding its worktree, which leaves
    the main tree untouched; committing it cherry-picks the member's commit onto
    the main tree.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        executable: str | None = None,
        isolate_parallel: bool = True,
    ) -> None:
        binary = executable or shutil.which("git")
        if binary is None:
            raise VersionControlError("git executable not found on PATH")
        self._git = binary
        self._state_dir = Path(state_dir).resolve()
        self._worktree_root = self._state_dir / "worktrees"
        self._isolate_parallel = isolate_parallel
        self._repo_locks: dict[Path, asyncio.Lock] = {}

    @property
    def isolates_parallel(self) -> bool:
        return self._isolate_parallel

    def _lock_for(self, repo_path: Path) -> asyncio.Lock:
        return self._repo_locks.setdefault(Path(repo_path).resolve(), asyncio.Lock())

    async def create_checkpoint(
        self, repo_path: Path, *, label: str, isolated: bool = False
    ) -> Checkpoint:
        repo = Path(repo_path).resolve()
        isolated = isolated and self._isolate_parallel
        async with self._lock_for(repo):
            await self._ensure_repository(repo)
            await self._run(repo, "add", "-A")
            await self._run(
                repo, *_GIT_IDENTITY, "commit", "--allow-empty", "--no-verify", "-q",
                "-m", f"checkpoint: before {label}",
            )
            sha = (await self._run(repo, "rev-parse", "HEAD")).stdout.strip()
            workdir = repo
            if isolated:
                workdir = self._worktree_root / f"{_safe_name(label)}-{sha[:8]}"
                if workdir.exists():
                    await self._remove_worktree(repo, workdir)
                workdir.parent.mkdir(parents=True, exist_ok=True)
                await self._run(repo, "worktree", "add", "--detach", str(workdir), sha)

        logger.debug(
            "Created checkpoint",
            extra={"repo": str(repo), "checkpoint_id": sha, "label": label, "isolated": isolated},
        )
        return Checkpoint(id=sha, repo_path=repo, workdir=workdir, isolated=isolated, label=label)

    async def commit(self, checkpoint: Checkpoint, *, message: str) -> str:
        workdir = checkpoint.workdir
        if not checkpoint.isolated:
            async with self._lock_for(checkpoint.repo_path):
                return await self._commit_all(workdir, message)

        member_sha = await self._commit_all(workdir, message)
        async with self._lock_for(checkpoint.repo_path):
            repo = checkpoint.repo_path
            diff = await self._run(
                repo, "diff", "--quiet", checkpoint.id, member_sha, check=False
            )
            if diff.returncode != 0:
                await self._run(repo, "add", "-A")
                await self._run(
                    repo, *_GIT_IDENTITY, "commit", "--allow-empty", "--no-verify", "-q",
                    "-m", f"checkpoint: before merging {checkpoint.label}",
                )
                picked = await self._run(
                    repo, *_GIT_IDENTITY, "cherry-pick", "--allow-empty", member_sha, check=False
                )
                if not picked.ok:
                    await self._run(repo, "cherry-pick", "--abort", check=False)
                    raise VersionControlError(
                        f"Could not merge {checkpoint.label} into {repo}: {picked.stderr.strip()}"
                    )
            head = (await self._run(repo, "rev-parse", "HEAD")).stdout.strip()
            await self._remove_worktree(repo, workdir)
        return head

    async def rollback(self, checkpoint: Checkpoint) -> None:
        if checkpoint.isolated:
            async with self._lock_for(checkpoint.repo_path):
                await self._remove_worktree(checkpoint.repo_path, checkpoint.workdir)
            return
        await self.restore(checkpoint.repo_path, checkpoint.id)

    async def restore(self, repo_path: Path, checkpoint_id: str) -> None:
        repo = Path(repo_path).resolve()
        async with self._lock_for(repo):
            verified = await self._run(
                repo, "rev-parse", "--verify", "--quiet", f"{checkpoint_id}^{{commit}}", check=False
            )
            if not verified.ok:
                raise VersionControlError(f"Unknown checkpoint {checkpoint_id} in {repo}")
            await self._run(repo, "reset", "--hard", "-q", checkpoint_id)
            await self._run(repo, "clean", "-fdq")

    async def _commit_all(self, workdir: Path, message: str) -> str:
        await self._run(workdir, "add", "-A")
        await self._run(
            workdir, *_GIT_IDENTITY, "commit", "--allow-empty", "--no-verify", "-q", "-m", message
        )
        return (await self._run(workdir, "rev-parse", "HEAD")).stdout.strip()

    async def _ensure_repository(self, repo: Path) -> None:
        if not repo.is_dir():
            raise VersionControlError(f"Repository path {repo} is not a directory")
        probe = await self._run(repo, "rev-parse", "--is-inside-work-tree", check=False)
        if not (probe.ok and probe.stdout.strip() == "true"):
            logger.info("Initializing git repository for checkpoints", extra={"repo": str(repo)})
            await self._run(repo, "init", "-q")
        await self._exclude_state_dir(repo)

    async def _exclude_state_dir(self, repo: Path) -> None:
        # State inside the target repo must survive reset/clean and stay out of commits.
        try:
            relative = self._state_dir.relative_to(repo)
        except ValueError:
            return
        entry = f"/{relative.as_posix()}/"
        exclude_path = (await self._run(repo, "rev-parse", "--git-path", "info/exclude")).stdout.strip()
        exclude = Path(exclude_path)
        if not exclude.is_absolute():
            exclude = repo / exclude
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if entry in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with exclude.open("a", encoding="utf-8") as handle:
            if existing and not existing.endswith("\n"):
                handle.write("\n")
            handle.write(entry + "\n")

    async def _remove_worktree(self, repo: Path, workdir: Path) -> None:
        await self._run(repo, "worktree", "remove", "--force", str(workdir), check=False)
        if workdir.exists():
            shutil.rmtree(workdir, ignore_errors=True)
        await self._run(repo, "worktree", "prune", check=False)

    async def _run(self, cwd: Path, *args: str, check: bool = True) -> GitResult:
        cmd = [self._git, *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        result = GitResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise VersionControlError(
                f"git {' '.join(args)} failed in {cwd} ({result.returncode}): {result.stderr.strip()}"
            )
        return result


class FakeVersionControl:
    """In-memory test double: checkpoints are byte snapshots of the directory tree.

    Isolated checkpoints get a scratch copy of the tree; committing one applies
    only the files the member changed, so siblings never see each other's work.
    """

    def __init__(self, *, isolate_parallel: bool = True) -> None:
        self._isolate_parallel = isolate_parallel
        self._snapshots: dict[str, dict[str, bytes]] = {}
        self._checkpoints: dict[str, Checkpoint] = {}
        self.created: list[Checkpoint] = []
        self.committed: list[str] = []
        self.rolled_back: list[str] = []
        self.restored: list[str] = []

    @property
    def isolates_parallel(self) -> bool:
        return self._isolate_parallel

    async def create_checkpoint(
        self, repo_path: Path, *, label: str, isolated: bool = False
    ) -> Checkpoint:
        repo = Path(repo_path)
        isolated = isolated and self._isolate_parallel
        checkpoint_id = uuid4().hex
        files = snapshot_tree(repo)
        self._snapshots[checkpoint_id] = files
        workdir = repo
        if isolated:
            workdir = Path(tempfile.mkdtemp(prefix=f"cerberus-{_safe_name(label)}-"))
            _write_files(workdir, files)
        checkpoint = Checkpoint(
            id=checkpoint_id, repo_path=repo, workdir=workdir, isolated=isolated, label=label
        )
        self._checkpoints[checkpoint_id] = checkpoint
        self.created.append(checkpoint)
        return checkpoint

    async def commit(self, checkpoint: Checkpoint, *, message: str) -> str:
        self.committed.append(checkpoint.id)
        if checkpoint.isolated:
            base = self._snapshots[checkpoint.id]
            member = snapshot_tree(checkpoint.workdir)
            for relative in base.keys() - member.keys():
                (checkpoint.repo_path / relative).unlink(missing_ok=True)
            _write_files(
                checkpoint.repo_path,
                {path: content for path, content in member.items() if base.get(path) != content},
            )
            shutil.rmtree(checkpoint.workdir, ignore_errors=True)
        return checkpoint.id

    async def rollback(self, checkpoint: Checkpoint) -> None:
        self.rolled_back.append(checkpoint.id)
        if checkpoint.isolated:
            shutil.rmtree(checkpoint.workdir, ignore_errors=True)
            return
        self._write_snapshot(checkpoint.repo_path, checkpoint.id)

    async def restore(self, repo_path: Path, checkpoint_id: str) -> None:
        self.restored.append(checkpoint_id)
        self._write_snapshot(Path(repo_path), checkpoint_id)

    def _write_snapshot(self, repo: Path, checkpoint_id: str) -> None:
        try:
            files = self._snapshots[checkpoint_id]
        except KeyError as exc:
            raise VersionControlError(f"Unknown checkpoint {checkpoint_id}") from exc
        for path in sorted(repo.rglob("*"), reverse=True):
            relative_path = path.relative_to(repo)
            if relative_path.parts[0] == ".git":
                continue
            relative = relative_path.as_posix()
            if path.is_file() and relative not in files:
                path.unlink()
            elif path.is_dir() and not any(path.iterdir()):
                path.rmdir()
        _write_files(repo, files)


def _write_files(root: Path, files: dict[str, bytes]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


def snapshot_tree(root: Path) -> dict[str, bytes]:
    """Map every file under ``root`` (excluding ``.git``) to its bytes."""

    files: dict[str, bytes] = {}
    if not root.exists():
        return files
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if relative.parts and relative.parts[0] == ".git":
            continue
        if path.is_file():
            files[relative.as_posix()] = path.read_bytes()
    return files


def tree_digest(root: Path) -> str:
    """Content hash of a working tree, excluding ``.git``."""

    digest = hashlib.sha256()
    for relative, content in snapshot_tree(root).items():
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(content).digest())
    return digest.hexdigest()


def _safe_name(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", label).strip("-") or "agent"


__all__ = [
    "Checkpoint",
    "FakeVersionControl",
    "GitResult",
    "GitVersionControl",
    "VersionControl",
    "snapshot_tree",
    "tree_digest",
]
