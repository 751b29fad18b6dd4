"""Session state: audit trail, store projection, mutex and reconciliation."""

from .audit import AuditLog
from .models import (
    AgentExecutionRecord,
    AgentStatus,
    AuditEvent,
    EventKind,
    Session,
    SessionStatus,
    session_id_for,
)
from .mutex import SessionMutex
from .projection import Reconciler, apply_event, fold_events, new_session
from .store import SessionStore

__all__ = [
    "AgentExecutionRecord",
    "AgentStatus",
    "AuditEvent",
    "AuditLog",
    "EventKind",
    "Reconciler",
    "Session",
    "SessionMutex",
    "SessionStatus",
    "SessionStore",
    "apply_event",
    "fold_events",
    "new_session",
    "session_id_for",
]
