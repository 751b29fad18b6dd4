"""Static pipeline models: phases, agents and their kinds."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, Field, field_validator, model_validator


class AgentKind(str, Enum):
    """Enumerated agent kinds; each maps to exactly one output validator."""

    PRE_RECON = "pre_recon"
    RECON = "recon"
    INJECTION_VULN = "injection_vuln"
    XSS_VULN = "xss_vuln"
    AUTH_VULN = "auth_vuln"
    SSRF_VULN = "ssrf_vuln"
    AUTHZ_VULN = "authz_vuln"
    INJECTION_EXPLOIT = "injection_exploit"
    XSS_EXPLOIT = "xss_exploit"
    AUTH_EXPLOIT = "auth_exploit"
    SSRF_EXPLOIT = "ssrf_exploit"
    AUTHZ_EXPLOIT = "authz_exploit"
    REPORT = "report"
    GENERIC = "generic"


class AgentDefinition(BaseModel):
    """One unit of pipeline work executed by an external agent."""

    name: str = Field(..., description="Unique agent name across the pipeline.")
    kind: AgentKind = Field(..., description="Selects the output validator for this agent.")
    parallel: bool = Field(
        default=False,
        description="Whether the agent runs inside a concurrent batch with its neighbours.",
    )
    stagger_slot: int | None = Field(
        default=None,
        description="Start offset multiplier inside the batch; defaults to the batch index.",
    )
    prompt: str = Field(default="", description="Instructions handed to the agent runner.")
    phase: str = Field(default="", description="Owning phase, filled in by the pipeline.")

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent name must not be empty")
        return normalized

    @field_validator("stagger_slot")
    @classmethod
    def _validate_slot(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("stagger_slot must be >= 0")
        return value


class PhaseDefinition(BaseModel):
    """An ordered group of agents sharing prerequisites."""

    name: str
    agents: list[AgentDefinition] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    position: int = 0

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Phase name must not be empty")
        return normalized

    @field_validator("prerequisites", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Phase prerequisites must be a phase name or a list of names")

    def units(self) -> list[list[AgentDefinition]]:
        """Partition agents into execution units in declared order.

        A unit with one sequential agent runs alone; consecutive parallel agents
        form a single batch unit.
        """

        units: list[list[AgentDefinition]] = []
        batch: list[AgentDefinition] = []
        for agent in self.agents:
            if agent.parallel:
                batch.append(agent)
                continue
            if batch:
                units.append(batch)
                batch = []
            units.append([agent])
        if batch:
            units.append(batch)
        return units


class PipelineDefinition(BaseModel):
    """Immutable phase graph defined at process start."""

    name: str = "default"
    phases: list[PhaseDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _link(self) -> "PipelineDefinition":
        if not self.phases:
            raise ValueError("Pipeline must declare at least one phase")

        seen_phases: dict[str, PhaseDefinition] = {}
        agents: dict[str, AgentDefinition] = {}
        for position, phase in enumerate(self.phases):
            if phase.name in seen_phases:
                raise ValueError(f"Duplicate phase name '{phase.name}'")
            for prerequisite in phase.prerequisites:
                if prerequisite not in seen_phases:
                    raise ValueError(
                        f"Phase '{phase.name}' requires '{prerequisite}', "
                        "which is not declared before it"
                    )
            if not phase.agents:
                raise ValueError(f"Phase '{phase.name}' declares no agents")
            phase.position = position
            for agent in phase.agents:
                if agent.name in agents:
                    raise ValueError(f"Duplicate agent name '{agent.name}'")
                agent.phase = phase.name
                agents[agent.name] = agent
            for batch in phase.units():
                if len(batch) > 1 or batch[0].parallel:
                    for index, agent in enumerate(batch):
                        if agent.stagger_slot is None:
                            agent.stagger_slot = index
            seen_phases[phase.name] = phase

        return self

    def agent(self, name: str) -> AgentDefinition:
        for agent in self.iter_agents():
            if agent.name == name:
                return agent
        raise KeyError(f"Unknown agent '{name}'")

    def phase(self, name: str) -> PhaseDefinition:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(f"Unknown phase '{name}'")

    def has_agent(self, name: str) -> bool:
        return any(agent.name == name for agent in self.iter_agents())

    def iter_agents(self) -> Iterator[AgentDefinition]:
        for phase in self.phases:
            yield from phase.agents

    def kinds(self) -> set[AgentKind]:
        return {agent.kind for agent in self.iter_agents()}

    def required_agents(self, phase_name: str) -> list[str]:
        """Agents that must be completed before ``phase_name`` may start."""

        phase = self.phase(phase_name)
        required: list[str] = []
        for prerequisite in phase.prerequisites:
            required.extend(agent.name for agent in self.phase(prerequisite).agents)
        return required


__all__ = ["AgentDefinition", "AgentKind", "PhaseDefinition", "PipelineDefinition"]
