"""Error taxonomy shared across the Cerberus pipeline engine."""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class ErrorKind(str, Enum):
    """Normalized failure kinds recorded on agent execution records."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TOOL_FAILURE = "tool_failure"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    OUTPUT_INVALID = "output_invalid"
    AUTHENTICATION = "authentication"
    INVALID_CREDENTIAL = "invalid_credential"
    QUOTA_EXCEEDED = "quota_exceeded"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER_ERROR,
        ErrorKind.TOOL_FAILURE,
        ErrorKind.TIMEOUT,
        ErrorKind.INTERRUPTED,
        ErrorKind.OUTPUT_INVALID,
    }
)


class CerberusError(RuntimeError):
    """Base class for pipeline engine errors."""


class PipelineLoadError(CerberusError):
    """Raised when a pipeline definition cannot be parsed or is inconsistent."""


class SessionNotFoundError(CerberusError):
    """Raised when neither a store file nor an audit log exists for a session."""


class CorruptedStateError(CerberusError):
    """Raised when the audit log cannot be trusted; needs manual intervention."""


class AuditWriteError(CerberusError):
    """Raised when an audit event could not be durably appended."""


class LockTimeoutError(CerberusError):
    """Raised when the session mutex could not be acquired in time."""


class PrerequisiteError(CerberusError):
    """Raised when an agent or phase is requested before its prerequisites completed."""


class AgentBusyError(CerberusError):
    """Raised when an agent is asked to start while an attempt is already in flight."""


class CheckpointNotFoundError(CerberusError):
    """Raised when an operator rollback names an unknown checkpoint."""


class VersionControlError(CerberusError):
    """Raised when a checkpoint operation fails in the version control backend."""


class ExternalAgentError(CerberusError):
    """Failure raised from an external agent call with an explicit kind."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind


class TransientExternalError(ExternalAgentError):
    """Network, rate-limit, upstream or tool-layer failure that may succeed on retry."""

    default_kind = ErrorKind.NETWORK


class FatalExternalError(ExternalAgentError):
    """Authentication, credential or quota failure that will not succeed on retry."""

    default_kind = ErrorKind.AUTHENTICATION


class OutputValidationError(CerberusError):
    """Raised when an agent's deliverables fail their validator."""

    def __init__(self, agent: str, reason: str) -> None:
        super().__init__(f"Agent '{agent}' produced invalid output: {reason}")
        self.agent = agent
        self.reason = reason


class AgentFailedError(CerberusError):
    """Terminal agent failure with the details an operator needs to intervene."""

    def __init__(
        self,
        agent: str,
        *,
        error_kind: str | None,
        attempts: int,
        checkpoint_id: str | None,
        detail: str | None = None,
    ) -> None:
        message = (
            f"Agent '{agent}' failed (kind={error_kind or 'unknown'}, attempts={attempts}, "
            f"last_checkpoint={checkpoint_id or 'none'})"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.agent = agent
        self.error_kind = error_kind
        self.attempts = attempts
        self.checkpoint_id = checkpoint_id


class PhaseBlockedError(CerberusError):
    """Raised when a phase settles with one or more members not completed."""

    def __init__(self, phase: str, failures: Iterable[AgentFailedError]) -> None:
        self.phase = phase
        self.failures = list(failures)
        names = ", ".join(failure.agent for failure in self.failures) or "unknown"
        details = "; ".join(str(failure) for failure in self.failures)
        super().__init__(f"Phase '{phase}' blocked by failed agents [{names}]: {details}")


__all__ = [
    "AgentBusyError",
    "AgentFailedError",
    "AuditWriteError",
    "CerberusError",
    "CheckpointNotFoundError",
    "CorruptedStateError",
    "ErrorKind",
    "ExternalAgentError",
    "FatalExternalError",
    "LockTimeoutError",
    "OutputValidationError",
    "PhaseBlockedError",
    "PipelineLoadError",
    "PrerequisiteError",
    "RETRYABLE_KINDS",
    "SessionNotFoundError",
    "TransientExternalError",
    "VersionControlError",
]
