import asyncio

import pytest

from vibecheck_orchestrator.catalog.profiles import Catalog, ProfileBook
from vibecheck_orchestrator.catalog.resolution import resolve_task_config
from vibecheck_orchestrator.config.settings import Settings
from vibecheck_orchestrator.errors import TransportError
from vibecheck_orchestrator.llm.gateway import ModelGateway
from vibecheck_orchestrator.llm.transport import GenerateRequest, GenerationResult
from vibecheck_orchestrator.refinement import prompts
from vibecheck_orchestrator.refinement.loop import RefinementLoop, RefinementUpdate
from vibecheck_orchestrator.storage.memory import InMemoryKeyValueStore


class ReviewingTransport:
    """Answers generation calls with code and critique calls from a script."""

    def __init__(self, critiques: list[str], code: str = "```python\nprint('ok')\n```") -> None:
        self.critiques = list(critiques)
        self.code = code
        self.generations: list[GenerateRequest] = []
        self.reviews: list[GenerateRequest] = []

    async def generate(self, payload: GenerateRequest) -> GenerationResult:
        if payload.system_instruction == prompts.CRITIQUE_SYSTEM_INSTRUCTION:
            self.reviews.append(payload)
            return GenerationResult(text=self.critiques.pop(0))
        self.generations.append(payload)
        return GenerationResult(text=self.code)


class ScriptedHarness:
    def __init__(self, results: list[list[str]] | None = None) -> None:
        self.results = list(results or [])
        self.calls: list[tuple[str, str]] = []

    async def run(self, artifact: str, config_id: str) -> list[str]:
        self.calls.append((artifact, config_id))
        return self.results.pop(0) if self.results else []


def _python_config():
    catalog = Catalog(ProfileBook(InMemoryKeyValueStore()))
    return resolve_task_config("python", catalog=catalog, settings=Settings())


def _loop(transport, harness, **kwargs) -> RefinementLoop:
    return RefinementLoop(ModelGateway(transport, max_attempts=1), harness, **kwargs)


def test_perfect_first_iteration_stops_after_one_generate_and_one_critique() -> None:
    transport = ReviewingTransport(["  Perfect \n"])
    harness = ScriptedHarness([[]])

    result = asyncio.run(
        _loop(transport, harness).run(prompt="print ok", config=_python_config())
    )

    assert len(transport.generations) == 1
    assert len(transport.reviews) == 1
    assert harness.calls == [("print('ok')", "python")]
    assert result.artifact == "print('ok')"
    assert result.iterations == 1
    assert result.exhausted is False
    assert result.critique_log == "**Iteration 1**: Passed with no errors or critiques."


def test_perfect_critique_with_runtime_errors_keeps_iterating() -> None:
    transport = ReviewingTransport(["perfect", "perfect"])
    harness = ScriptedHarness([["Uncaught NameError: x"], []])

    result = asyncio.run(
        _loop(transport, harness).run(prompt="print ok", config=_python_config())
    )

    assert result.iterations == 2
    assert result.exhausted is False
    retry = transport.generations[1]
    assert retry.prompt == prompts.refinement_prompt("print ok")
    assert "Uncaught NameError: x" in retry.system_instruction
    assert "print('ok')" in retry.system_instruction
    assert "Runtime Analysis:\nThe code produced the following console errors" in transport.reviews[0].prompt
    assert result.critique_log.startswith("**Iteration 1 Feedback:**")
    assert result.critique_log.endswith("**Iteration 2**: Passed with no errors or critiques.")


def test_budget_exhaustion_soft_fails_with_note() -> None:
    transport = ReviewingTransport(["- missing input check"] * 3)
    harness = ScriptedHarness()

    result = asyncio.run(
        _loop(transport, harness).run(prompt="print ok", config=_python_config())
    )

    assert len(transport.generations) == 3
    assert len(transport.reviews) == 3
    assert result.iterations == 3
    assert result.exhausted is True
    assert result.artifact == "print('ok')"
    assert result.critique_log.count(prompts.ITERATION_DELIMITER) == 2
    assert "**Iteration 3 Feedback:**" in result.critique_log
    assert result.critique_log.endswith(prompts.MAX_ITERATIONS_NOTE)


def test_max_iterations_is_configurable() -> None:
    transport = ReviewingTransport(["needs work"])
    harness = ScriptedHarness()

    result = asyncio.run(
        _loop(transport, harness, max_iterations=1).run(prompt="p", config=_python_config())
    )

    assert result.iterations == 1
    assert result.exhausted is True


def test_progress_updates_report_each_phase() -> None:
    transport = ReviewingTransport(["perfect"])
    updates: list[RefinementUpdate] = []

    asyncio.run(
        _loop(transport, ScriptedHarness()).run(
            prompt="p", config=_python_config(), on_update=updates.append
        )
    )

    statuses = [item.status for item in updates if item.status]
    assert statuses == [
        "Iteration 1/3: Generating...",
        "Iteration 1: Executing...",
        "Iteration 1: Critiquing...",
    ]
    assert updates[0].is_busy is True
    assert any(item.output_data == "print('ok')" for item in updates)
    assert updates[-1].changes() == {
        "critique_notes": "**Iteration 1**: Passed with no errors or critiques."
    }


def test_generation_failure_propagates() -> None:
    class FailingTransport:
        async def generate(self, payload: GenerateRequest) -> GenerationResult:
            raise TransportError("quota exceeded")

    with pytest.raises(TransportError, match="quota exceeded"):
        asyncio.run(
            _loop(FailingTransport(), ScriptedHarness()).run(prompt="p", config=_python_config())
        )


def test_is_perfect_ignores_case_and_whitespace() -> None:
    assert prompts.is_perfect(" PERFECT\n")
    assert not prompts.is_perfect("perfect, except for one thing")
