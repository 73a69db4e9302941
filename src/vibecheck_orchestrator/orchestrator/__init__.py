"""Fan-out of user requests into concurrent generation tasks."""

from vibecheck_orchestrator.orchestrator.service import GenerationOrchestrator, build_orchestrator
from vibecheck_orchestrator.orchestrator.tasks import (
    GenerationRequest,
    GenerationTask,
    TargetConfig,
)

__all__ = [
    "GenerationOrchestrator",
    "GenerationRequest",
    "GenerationTask",
    "TargetConfig",
    "build_orchestrator",
]
