"""Output validators: an explicit agent-kind to validator table built at startup."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from ..deliverables import DeliverableError, load_queue, queue_file_path
from ..errors import PipelineLoadError
from ..pipeline import AgentDefinition, AgentKind, PipelineDefinition


@dataclass(slots=True, frozen=True)
class OutputArtifacts:
    """What an attempt left behind for its validator to inspect."""

    agent: str
    workdir: Path
    deliverables_dir: Path
    files: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ValidationResult:
    valid: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def fail(cls, reason: str) -> "ValidationResult":
        return cls(False, reason)


Validator = Callable[[OutputArtifacts], ValidationResult]


def require_files(*filenames: str) -> Validator:
    """Validator that passes when every named deliverable exists and is non-empty."""

    def _validate(artifacts: OutputArtifacts) -> ValidationResult:
        for filename in filenames:
            path = artifacts.deliverables_dir / filename
            if not path.is_file():
                return ValidationResult.fail(f"missing deliverable {filename}")
            if path.stat().st_size == 0:
                return ValidationResult.fail(f"empty deliverable {filename}")
        return ValidationResult.ok()

    return _validate


def vulnerability_analysis(vuln_type: str) -> Validator:
    """Analysis report plus a well-formed exploitation queue."""

    report = require_files(f"{vuln_type}_analysis_deliverable.md")

    def _validate(artifacts: OutputArtifacts) -> ValidationResult:
        result = report(artifacts)
        if not result.valid:
            return result
        try:
            load_queue(queue_file_path(vuln_type, artifacts.deliverables_dir))
        except DeliverableError as exc:
            return ValidationResult.fail(str(exc))
        return ValidationResult.ok()

    return _validate


def exploitation(vuln_type: str) -> Validator:
    """Exploitation evidence is required only when the queue lists vulnerabilities."""

    evidence = require_files(f"{vuln_type}_exploitation_evidence.md")

    def _validate(artifacts: OutputArtifacts) -> ValidationResult:
        queue_path = queue_file_path(vuln_type, artifacts.deliverables_dir)
        if queue_path.exists():
            try:
                if not load_queue(queue_path):
                    return ValidationResult.ok()
            except DeliverableError as exc:
                return ValidationResult.fail(str(exc))
        return evidence(artifacts)

    return _validate


def any_artifact(artifacts: OutputArtifacts) -> ValidationResult:
    """Accept when the agent reported artifacts or left a deliverable named after itself."""

    if artifacts.files:
        return ValidationResult.ok()
    return require_files(f"{artifacts.agent}_deliverable.md")(artifacts)


def default_validators() -> dict[AgentKind, Validator]:
    return {
        AgentKind.PRE_RECON: require_files("pre_recon_deliverable.md"),
        AgentKind.RECON: require_files("recon_deliverable.md"),
        AgentKind.INJECTION_VULN: vulnerability_analysis("injection"),
        AgentKind.XSS_VULN: vulnerability_analysis("xss"),
        AgentKind.AUTH_VULN: vulnerability_analysis("auth"),
        AgentKind.SSRF_VULN: vulnerability_analysis("ssrf"),
        AgentKind.AUTHZ_VULN: vulnerability_analysis("authz"),
        AgentKind.INJECTION_EXPLOIT: exploitation("injection"),
        AgentKind.XSS_EXPLOIT: exploitation("xss"),
        AgentKind.AUTH_EXPLOIT: exploitation("auth"),
        AgentKind.SSRF_EXPLOIT: exploitation("ssrf"),
        AgentKind.AUTHZ_EXPLOIT: exploitation("authz"),
        AgentKind.REPORT: require_files("comprehensive_security_assessment_report.md"),
        AgentKind.GENERIC: any_artifact,
    }


class ValidatorRegistry:
    """Dispatch table from agent kind to validator, checked against a pipeline."""

    def __init__(self, table: Mapping[AgentKind, Validator]) -> None:
        self._table = dict(table)

    @classmethod
    def for_pipeline(
        cls,
        pipeline: PipelineDefinition,
        overrides: Mapping[AgentKind, Validator] | None = None,
    ) -> "ValidatorRegistry":
        table = default_validators()
        if overrides:
            table.update(overrides)
        missing = sorted(kind.value for kind in pipeline.kinds() if kind not in table)
        if missing:
            raise PipelineLoadError(f"No validator registered for agent kinds: {', '.join(missing)}")
        return cls(table)

    def validator_for(self, agent: AgentDefinition) -> Validator:
        try:
            return self._table[agent.kind]
        except KeyError as exc:
            raise PipelineLoadError(
                f"No validator registered for kind '{agent.kind.value}' (agent {agent.name})"
            ) from exc

    def validate(self, agent: AgentDefinition, artifacts: OutputArtifacts) -> ValidationResult:
        return self.validator_for(agent)(artifacts)


__all__ = [
    "OutputArtifacts",
    "ValidationResult",
    "Validator",
    "ValidatorRegistry",
    "any_artifact",
    "default_validators",
    "exploitation",
    "require_files",
    "vulnerability_analysis",
]
