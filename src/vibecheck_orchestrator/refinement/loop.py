"""LangGraph refinement loop: generate, execute, review, decide."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from langgraph.graph import END, StateGraph

from vibecheck_orchestrator.catalog.resolution import TaskConfig
from vibecheck_orchestrator.llm.gateway import ModelGateway
from vibecheck_orchestrator.llm.transport import GenerateRequest
from vibecheck_orchestrator.refinement import prompts
from vibecheck_orchestrator.refinement.state import RefinementState, initial_state
from vibecheck_orchestrator.sandbox.harness import SandboxRunner

logger = logging.getLogger(__name__)

CRITIQUE_TEMPERATURE = 0.2


@dataclass(frozen=True)
class RefinementUpdate:
    """Progress event; unset fields are left untouched by the receiver."""

    status: str | None = None
    critique_notes: str | None = None
    output_data: str | None = None
    is_busy: bool | None = None

    def changes(self) -> dict[str, Any]:
        values = {
            "status_text": self.status,
            "critique_notes": self.critique_notes,
            "output_data": self.output_data,
            "is_busy": self.is_busy,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class RefinementResult:
    artifact: str
    critique_log: str
    iterations: int
    exhausted: bool


UpdateCallback = Callable[[RefinementUpdate], None]


class RefinementLoop:
    """Bounded self-correction over one code artifact."""

    def __init__(
        self,
        gateway: ModelGateway,
        harness: SandboxRunner,
        *,
        max_iterations: int = 3,
        critique_model: str = "gemini-2.5-flash",
    ) -> None:
        self.gateway = gateway
        self.harness = harness
        self.max_iterations = max(1, max_iterations)
        self.critique_model = critique_model

    async def run(
        self,
        *,
        prompt: str,
        config: TaskConfig,
        on_update: UpdateCallback | None = None,
    ) -> RefinementResult:
        run = _RefinementRun(self, config=config, on_update=on_update)
        graph = build_refinement_graph(run)
        state = initial_state(
            prompt=prompt,
            system_instruction=config.system_instruction,
            max_iterations=self.max_iterations,
        )
        final: dict[str, Any] = await graph.ainvoke(
            state, config={"recursion_limit": self.max_iterations * 4 + 4}
        )
        logger.info(
            "refinement event=finished config_id=%s iterations=%d exhausted=%s",
            config.config_id,
            final.get("iteration", 0),
            final.get("exhausted", False),
        )
        return RefinementResult(
            artifact=final.get("current_artifact", ""),
            critique_log=final.get("accumulated_critique", ""),
            iterations=int(final.get("iteration", 0)),
            exhausted=bool(final.get("exhausted", False)),
        )


def build_refinement_graph(run: _RefinementRun):
    def _should_continue(state: RefinementState) -> str:
        return "done" if state.get("done", False) else "continue"

    graph = StateGraph(RefinementState)

    graph.add_node("generate", run.generate)
    graph.add_node("execute", run.execute)
    graph.add_node("review", run.review)
    graph.add_node("decide", run.decide)

    graph.set_entry_point("generate")
    graph.add_edge("generate", "execute")
    graph.add_edge("execute", "review")
    graph.add_edge("review", "decide")
    graph.add_conditional_edges("decide", _should_continue, {"continue": "generate", "done": END})

    return graph.compile()


class _RefinementRun:
    """Node implementations bound to one loop invocation."""

    def __init__(
        self,
        loop: RefinementLoop,
        *,
        config: TaskConfig,
        on_update: UpdateCallback | None,
    ) -> None:
        self.loop = loop
        self.config = config
        self.on_update = on_update

    async def generate(self, state: RefinementState) -> RefinementState:
        iteration = int(state.get("iteration", 0)) + 1
        max_iterations = int(state.get("max_iterations", self.loop.max_iterations))
        log = state.get("accumulated_critique", "")
        self._emit(
            status=f"Iteration {iteration}/{max_iterations}: Generating...",
            critique_notes=log,
            is_busy=True,
        )

        prompt = state.get("prompt", "")
        system_instruction = state.get("system_instruction", "")
        if iteration > 1:
            system_instruction = prompts.refinement_system_instruction(
                system_instruction=system_instruction,
                prompt=prompt,
                previous_artifact=state.get("current_artifact", ""),
                accumulated_critique=log,
            )
            prompt = prompts.refinement_prompt(prompt)

        result = await self.loop.gateway.generate(
            GenerateRequest(
                model=self.config.model,
                prompt=prompt,
                system_instruction=system_instruction or None,
                temperature=self.config.temperature,
                top_p=self.config.top_p,
                top_k=self.config.top_k,
            )
        )
        artifact = self.config.apply_modifier(result.text)
        self._emit(status=f"Iteration {iteration}: Executing...", output_data=artifact)
        return {"iteration": iteration, "current_artifact": artifact}

    async def execute(self, state: RefinementState) -> RefinementState:
        errors = await self.loop.harness.run(
            state.get("current_artifact", ""), self.config.config_id
        )
        self._emit(status=f"Iteration {state.get('iteration', 1)}: Critiquing...")
        return {"execution_errors": list(errors)}

    async def review(self, state: RefinementState) -> RefinementState:
        result = await self.loop.gateway.generate(
            GenerateRequest(
                model=self.loop.critique_model,
                system_instruction=prompts.CRITIQUE_SYSTEM_INSTRUCTION,
                prompt=prompts.critique_prompt(
                    prompt=state.get("prompt", ""),
                    artifact=state.get("current_artifact", ""),
                    syntax=self.config.syntax,
                    errors=state.get("execution_errors", []),
                ),
                temperature=CRITIQUE_TEMPERATURE,
            )
        )
        return {"critique": result.text.strip()}

    async def decide(self, state: RefinementState) -> RefinementState:
        iteration = int(state.get("iteration", 1))
        errors = state.get("execution_errors", [])
        critique = state.get("critique", "")
        log = state.get("accumulated_critique", "")

        if prompts.is_perfect(critique) and not errors:
            log = prompts.append_entry(log, prompts.iteration_passed(iteration))
            self._emit(critique_notes=log)
            return {"accumulated_critique": log, "done": True}

        log = prompts.append_entry(
            log,
            prompts.iteration_feedback(iteration, critique, errors),
            delimiter=prompts.ITERATION_DELIMITER,
        )
        if iteration >= int(state.get("max_iterations", self.loop.max_iterations)):
            log = prompts.append_entry(log, prompts.MAX_ITERATIONS_NOTE)
            self._emit(critique_notes=log)
            return {"accumulated_critique": log, "done": True, "exhausted": True}

        self._emit(critique_notes=log)
        return {"accumulated_critique": log, "done": False}

    def _emit(self, **fields: Any) -> None:
        if self.on_update is not None:
            self.on_update(RefinementUpdate(**fields))
