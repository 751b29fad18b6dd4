"""Fold the audit trail into a session projection and keep the store in line with it."""

from __future__ import annotations

import logging
from typing import Iterable

from ..errors import CorruptedStateError, ErrorKind, SessionNotFoundError
from ..pipeline import PipelineDefinition
from .audit import AuditLog
from .models import (
    AgentExecutionRecord,
    AgentStatus,
    AuditEvent,
    EventKind,
    Session,
    SessionStatus,
)
from .store import SessionStore

logger = logging.getLogger(__name__)


def new_session(event: AuditEvent, pipeline: PipelineDefinition) -> Session:
    """Build the initial projection from a ``session_created`` event."""

    if event.kind is not EventKind.SESSION_CREATED:
        raise CorruptedStateError(
            f"Audit log for {event.session_id} must start with session_created, "
            f"found {event.kind.value}"
        )
    payload = event.payload
    session = Session(
        id=event.session_id,
        web_url=str(payload.get("web_url", "")),
        repo_path=str(payload.get("repo_path", "")),
        config_path=payload.get("config_path"),
        run_id=payload.get("run_id"),
        created_at=event.timestamp,
        updated_at=event.timestamp,
        agents={
            agent.name: AgentExecutionRecord(name=agent.name, phase=agent.phase)
            for agent in pipeline.iter_agents()
        },
    )
    return _derive_progress(session, pipeline)


def apply_event(session: Session, event: AuditEvent, pipeline: PipelineDefinition) -> Session:
    """Return a new projection with ``event`` applied. Pure: never touches I/O."""

    if event.session_id != session.id:
        raise CorruptedStateError(
            f"Event for session {event.session_id} applied to session {session.id}"
        )
    updated = session.model_copy(deep=True)
    updated.updated_at = event.timestamp
    payload = event.payload

    if event.kind is EventKind.SESSION_CREATED:
        raise CorruptedStateError(f"Duplicate session_created event in session {session.id}")

    if event.kind is EventKind.SESSION_ROLLED_BACK:
        for name in payload.get("reset_agents", []):
            _require_record(updated, name)
            updated.agents[name] = _fresh_record(updated.agents[name])
        return _derive_progress(updated, pipeline)

    if event.agent is None:
        raise CorruptedStateError(f"{event.kind.value} event without an agent in {session.id}")
    record = _require_record(updated, event.agent)

    if event.kind is EventKind.AGENT_STARTED:
        record.status = AgentStatus.RUNNING
        record.attempts += 1
        record.started_at = event.timestamp
        record.ended_at = None
        record.checkpoint_id = None
        record.checkpoint_workdir = None
        record.checkpoint_isolated = False
        record.last_error = None
        record.last_error_kind = None
    elif event.kind is EventKind.CHECKPOINT_CREATED:
        record.checkpoint_id = payload.get("checkpoint_id")
        record.checkpoint_workdir = payload.get("workdir")
        record.checkpoint_isolated = bool(payload.get("isolated", False))
    elif event.kind is EventKind.VALIDATION_FAILED:
        record.last_error_kind = ErrorKind.OUTPUT_INVALID.value
        record.last_error = payload.get("reason")
    elif event.kind is EventKind.CHECKPOINT_ROLLED_BACK:
        record.status = AgentStatus.ROLLED_BACK
    elif event.kind is EventKind.AGENT_COMPLETED:
        record.status = AgentStatus.COMPLETED
        record.ended_at = event.timestamp
        record.cost_usd = round(record.cost_usd + float(payload.get("cost_usd") or 0.0), 6)
        record.last_error = None
        record.last_error_kind = None
    elif event.kind is EventKind.AGENT_FAILED:
        record.status = AgentStatus.FAILED if payload.get("terminal") else AgentStatus.PENDING
        record.ended_at = event.timestamp
        record.last_error_kind = payload.get("error_kind")
        record.last_error = payload.get("reason")
        record.cost_usd = round(record.cost_usd + float(payload.get("cost_usd") or 0.0), 6)
    elif event.kind is EventKind.AGENT_RESET:
        updated.agents[event.agent] = _fresh_record(record)

    return _derive_progress(updated, pipeline)


def fold_events(events: Iterable[AuditEvent], pipeline: PipelineDefinition) -> Session | None:
    """Compute the authoritative projection of a session. ``None`` for an empty log."""

    session: Session | None = None
    for event in events:
        if session is None:
            session = new_session(event, pipeline)
        else:
            session = apply_event(session, event, pipeline)
    return session


def _fresh_record(record: AgentExecutionRecord) -> AgentExecutionRecord:
    return AgentExecutionRecord(name=record.name, phase=record.phase)


def _require_record(session: Session, agent: str) -> AgentExecutionRecord:
    record = session.agents.get(agent)
    if record is None:
        raise CorruptedStateError(
            f"Audit log for {session.id} references agent '{agent}' missing from the pipeline"
        )
    return record


def _derive_progress(session: Session, pipeline: PipelineDefinition) -> Session:
    session.current_phase = None
    for phase in pipeline.phases:
        if any(
            session.agents[agent.name].status is not AgentStatus.COMPLETED for agent in phase.agents
        ):
            session.current_phase = phase.name
            break

    statuses = [record.status for record in session.agents.values()]
    if statuses and all(status is AgentStatus.COMPLETED for status in statuses):
        session.status = SessionStatus.COMPLETED
    elif any(status is AgentStatus.FAILED for status in statuses) and not any(
        status is AgentStatus.RUNNING for status in statuses
    ):
        session.status = SessionStatus.FAILED
    else:
        session.status = SessionStatus.ACTIVE
    return session


class Reconciler:
    """Recompute the store from the audit log before any command acts on a session."""

    def __init__(self, audit: AuditLog, store: SessionStore, pipeline: PipelineDefinition) -> None:
        self._audit = audit
        self._store = store
        self._pipeline = pipeline

    def project(self, session_id: str) -> Session:
        session = fold_events(self._audit.read_all(session_id), self._pipeline)
        if session is None:
            if self._store.exists(session_id):
                raise CorruptedStateError(
                    f"Session {session_id} has a store file but no audit log; "
                    "refusing to trust the store alone"
                )
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return session

    async def reconcile(self, session_id: str) -> tuple[Session, bool]:
        """Rewrite the store when it differs from the fold. Returns (session, changed)."""

        async with self._store.mutex.hold(session_id):
            session = self.project(session_id)
            rendered = self._store.render(session)
            current = self._store.read_bytes(session_id)
            if current == rendered:
                return session, False
            self._store.write_bytes(session_id, rendered)
            logger.info(
                "Reconciled session store from audit log",
                extra={
                    "session_id": session_id,
                    "store_missing": current is None,
                    "status": session.status.value,
                },
            )
            return session, True


__all__ = ["Reconciler", "apply_event", "fold_events", "new_session"]
