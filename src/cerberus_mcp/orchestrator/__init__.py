"""Agent, batch and phase orchestration plus the command surface."""

from .manager import CheckpointManager
from .service import PipelineService

__all__ = ["CheckpointManager", "PipelineService"]
