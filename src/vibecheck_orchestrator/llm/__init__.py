"""Model transport and the concurrency-capped gateway in front of it."""

from vibecheck_orchestrator.llm.gateway import ModelGateway
from vibecheck_orchestrator.llm.transport import (
    GeminiTransport,
    GenerateRequest,
    GenerationResult,
    ModelTransport,
)

__all__ = [
    "GeminiTransport",
    "GenerateRequest",
    "GenerationResult",
    "ModelGateway",
    "ModelTransport",
]
