"""Data models for persisted session state and the audit trail."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    SESSION_CREATED = "session_created"
    AGENT_STARTED = "agent_started"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_ROLLED_BACK = "checkpoint_rolled_back"
    VALIDATION_FAILED = "validation_failed"
    AGENT_RESET = "agent_reset"
    SESSION_ROLLED_BACK = "session_rolled_back"


class AgentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class AuditEvent:
    """Immutable audit record; one JSON line in the session log."""

    kind: EventKind
    session_id: str
    timestamp: str
    agent: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "kind": self.kind.value,
                "session_id": self.session_id,
                "agent": self.agent,
                "timestamp": self.timestamp,
                "payload": self.payload,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEvent":
        return cls(
            kind=EventKind(data["kind"]),
            session_id=str(data["session_id"]),
            timestamp=str(data["timestamp"]),
            agent=data.get("agent"),
            payload=dict(data.get("payload") or {}),
        )


class AgentExecutionRecord(BaseModel):
    """Per-session, per-agent execution state."""

    name: str
    phase: str
    status: AgentStatus = AgentStatus.PENDING
    attempts: int = 0
    last_error_kind: str | None = None
    last_error: str | None = None
    checkpoint_id: str | None = None
    checkpoint_workdir: str | None = None
    checkpoint_isolated: bool = False
    started_at: str | None = None
    ended_at: str | None = None
    cost_usd: float = 0.0

    @property
    def has_open_checkpoint(self) -> bool:
        """A checkpoint was taken but neither committed nor rolled back."""

        return self.status is AgentStatus.RUNNING and self.checkpoint_id is not None


class Session(BaseModel):
    """Compact projection of pipeline progress for one target."""

    id: str
    web_url: str
    repo_path: str
    config_path: str | None = None
    run_id: str | None = None
    created_at: str
    updated_at: str
    status: SessionStatus = SessionStatus.ACTIVE
    current_phase: str | None = None
    agents: dict[str, AgentExecutionRecord] = Field(default_factory=dict)

    def record(self, agent: str) -> AgentExecutionRecord:
        try:
            return self.agents[agent]
        except KeyError as exc:
            raise KeyError(f"Session {self.id} has no record for agent '{agent}'") from exc


def session_id_for(web_url: str, repo_path: str) -> str:
    """Deterministic session identity for a (target URL, repository) pair."""

    digest = hashlib.sha256(f"{web_url.strip()}\n{repo_path}".encode("utf-8"))
    return digest.hexdigest()[:16]


__all__ = [
    "AgentExecutionRecord",
    "AgentStatus",
    "AuditEvent",
    "EventKind",
    "Session",
    "SessionStatus",
    "session_id_for",
]
