"""Explicit per-run context handed to every operation that needs the target."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DELIVERABLES_DIRNAME = "deliverables"


@dataclass(slots=True, frozen=True)
class RunContext:
    session_id: str
    web_url: str
    repo_path: Path
    run_id: str | None = None

    def deliverables_dir(self, root: Path | None = None) -> Path:
        """Deliverables directory under ``root`` (defaults to the repository).

        With a run id, deliverables go to ``deliverables/runs/<run_id>``.
        """

        base = Path(root) if root is not None else self.repo_path
        if self.run_id:
            return base / DELIVERABLES_DIRNAME / "runs" / self.run_id
        return base / DELIVERABLES_DIRNAME


__all__ = ["DELIVERABLES_DIRNAME", "RunContext"]
