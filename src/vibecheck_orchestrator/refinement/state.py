"""Typed state contract for the refinement graph."""

from typing import TypedDict


class RefinementState(TypedDict, total=False):
    prompt: str
    system_instruction: str
    iteration: int
    max_iterations: int
    current_artifact: str
    accumulated_critique: str
    execution_errors: list[str]
    critique: str
    done: bool
    exhausted: bool


def initial_state(
    prompt: str,
    system_instruction: str = "",
    max_iterations: int = 3,
) -> RefinementState:
    return {
        "prompt": prompt,
        "system_instruction": system_instruction,
        "iteration": 0,
        "max_iterations": max_iterations,
        "current_artifact": "",
        "accumulated_critique": "",
        "execution_errors": [],
        "critique": "",
        "done": False,
        "exhausted": False,
    }
