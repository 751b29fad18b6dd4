"""Agent execution: checkpoints, invocation, validation and retry policy."""

from .checkpoints import Checkpoint, FakeVersionControl, GitVersionControl, VersionControl
from .retry import FailureClassification, RetryPolicy, classify
from .runner import (
    AgentInvocation,
    AgentInvocationError,
    AgentInvoker,
    AgentNotFoundError,
    AgentOutcome,
    CommandAgentRunner,
    FakeAgentRunner,
)
from .validators import OutputArtifacts, ValidationResult, ValidatorRegistry

__all__ = [
    "AgentInvocation",
    "AgentInvocationError",
    "AgentInvoker",
    "AgentNotFoundError",
    "AgentOutcome",
    "Checkpoint",
    "CommandAgentRunner",
    "FailureClassification",
    "FakeAgentRunner",
    "FakeVersionControl",
    "GitVersionControl",
    "OutputArtifacts",
    "RetryPolicy",
    "ValidationResult",
    "ValidatorRegistry",
    "VersionControl",
    "classify",
]
