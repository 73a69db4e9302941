"""Generate, execute, review, decide: bounded self-correction of code artifacts."""

from vibecheck_orchestrator.refinement.loop import (
    RefinementLoop,
    RefinementResult,
    RefinementUpdate,
    build_refinement_graph,
)
from vibecheck_orchestrator.refinement.state import RefinementState, initial_state

__all__ = [
    "RefinementLoop",
    "RefinementResult",
    "RefinementState",
    "RefinementUpdate",
    "build_refinement_graph",
    "initial_state",
]
