"""Pipeline loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import PipelineLoadError
from .models import AgentKind, PipelineDefinition

_VULN_CLASSES: tuple[str, ...] = ("injection", "xss", "auth", "ssrf", "authz")

DEFAULT_PIPELINE: dict[str, Any] = {
    "name": "default",
    "phases": [
        {
            "name": "pre-reconnaissance",
            "agents": [{"name": "pre-recon", "kind": AgentKind.PRE_RECON.value}],
        },
        {
            "name": "reconnaissance",
            "prerequisites": ["pre-reconnaissance"],
            "agents": [{"name": "recon", "kind": AgentKind.RECON.value}],
        },
        {
            "name": "vulnerability-analysis",
            "prerequisites": ["reconnaissance"],
            "agents": [
                {"name": f"{vuln}-vuln", "kind": f"{vuln}_vuln", "parallel": True}
                for vuln in _VULN_CLASSES
            ],
        },
        {
            "name": "exploitation",
            "prerequisites": ["vulnerability-analysis"],
            "agents": [
                {"name": f"{vuln}-exploit", "kind": f"{vuln}_exploit", "parallel": True}
                for vuln in _VULN_CLASSES
            ],
        },
        {
            "name": "reporting",
            "prerequisites": ["exploitation"],
            "agents": [{"name": "report", "kind": AgentKind.REPORT.value}],
        },
    ],
}


class PipelineLoader:
    """Loads a pipeline definition from a YAML file, or the built-in default."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None

    @property
    def path(self) -> Path | None:
        return self._path

    def load(self) -> PipelineDefinition:
        if self._path is None:
            return default_pipeline()

        if not self._path.exists():
            raise PipelineLoadError(f"Pipeline file not found: {self._path}")

        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise PipelineLoadError(f"Failed to parse YAML in {self._path}: {exc}") from exc

        if not isinstance(document, dict):
            raise PipelineLoadError(f"Pipeline file {self._path} must contain a mapping")

        return parse_pipeline(document, source=str(self._path))


def parse_pipeline(document: dict[str, Any], *, source: str = "<memory>") -> PipelineDefinition:
    """Validate a raw pipeline mapping."""

    try:
        return PipelineDefinition.model_validate(document)
    except ValidationError as exc:
        raise PipelineLoadError(f"Pipeline validation error in {source}: {exc}") from exc


def default_pipeline() -> PipelineDefinition:
    """Return a fresh copy of the built-in five-phase pentest pipeline."""

    return parse_pipeline(DEFAULT_PIPELINE, source="<default>")


__all__ = ["DEFAULT_PIPELINE", "PipelineLoader", "default_pipeline", "parse_pipeline"]
