"""Pipeline definitions and loader exports."""

from .loader import DEFAULT_PIPELINE, PipelineLoader, default_pipeline, parse_pipeline
from .models import AgentDefinition, AgentKind, PhaseDefinition, PipelineDefinition

__all__ = [
    "AgentDefinition",
    "AgentKind",
    "DEFAULT_PIPELINE",
    "PhaseDefinition",
    "PipelineDefinition",
    "PipelineLoader",
    "default_pipeline",
    "parse_pipeline",
]
