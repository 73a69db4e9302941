import asyncio
import json
from typing import Callable

from vibecheck_orchestrator.catalog.profiles import Catalog, ProfileBook
from vibecheck_orchestrator.config.settings import Settings
from vibecheck_orchestrator.errors import TransportError
from vibecheck_orchestrator.llm.gateway import ModelGateway
from vibecheck_orchestrator.llm.transport import GenerateRequest, GenerationResult
from vibecheck_orchestrator.orchestrator.service import GenerationOrchestrator
from vibecheck_orchestrator.orchestrator.tasks import GenerationRequest, TargetConfig
from vibecheck_orchestrator.refinement import prompts
from vibecheck_orchestrator.session.models import OutputPatch
from vibecheck_orchestrator.session.store import SessionStore
from vibecheck_orchestrator.storage.memory import InMemoryKeyValueStore

Handler = Callable[[GenerateRequest], GenerationResult]


class HandlerTransport:
    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.calls: list[GenerateRequest] = []

    async def generate(self, payload: GenerateRequest) -> GenerationResult:
        self.calls.append(payload)
        await asyncio.sleep(0)
        return self.handler(payload)


class NoErrorHarness:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def run(self, artifact: str, config_id: str) -> list[str]:
        self.calls.append((artifact, config_id))
        return []


def _fenced_html(_: GenerateRequest) -> GenerationResult:
    return GenerationResult(text="```html\n<h1>hi</h1>\n```")


def _orchestrator(
    transport,
    *,
    settings: Settings | None = None,
    book: ProfileBook | None = None,
    harness=None,
) -> GenerationOrchestrator:
    settings = settings or Settings(use_supercharge=False)
    return GenerationOrchestrator(
        gateway=ModelGateway(transport, max_attempts=1),
        harness=harness or NoErrorHarness(),
        catalog=Catalog(book or ProfileBook(InMemoryKeyValueStore())),
        store=SessionStore(),
        settings=settings,
    )


def test_dispatch_creates_all_outputs_busy_before_any_result() -> None:
    orchestrator = _orchestrator(HandlerTransport(_fenced_html))

    async def _run():
        snapshot = orchestrator.dispatch(orchestrator.build_request("hero", config_id="html", batch_size=3))
        await orchestrator.wait(snapshot.id)
        return snapshot, orchestrator.store.get_round(snapshot.id)

    snapshot, final = asyncio.run(_run())

    assert len(snapshot.outputs) == 3
    assert all(item.is_busy and item.output_data is None for item in snapshot.outputs)
    assert [item.id for item in final.outputs] == [item.id for item in snapshot.outputs]
    assert all(item.is_busy is False for item in final.outputs)


def test_direct_path_batch_of_two_strips_fences() -> None:
    transport = HandlerTransport(_fenced_html)
    orchestrator = _orchestrator(transport)

    final = asyncio.run(
        orchestrator.generate(orchestrator.build_request("hero", config_id="html", batch_size=2))
    )

    assert len(transport.calls) == 2
    assert [item.output_data for item in final.outputs] == ["<h1>hi</h1>", "<h1>hi</h1>"]
    for output in final.outputs:
        assert output.got_error is False
        assert output.total_time_ms is not None and output.total_time_ms >= 0
        assert output.mode_name == "HTML/JS"
        assert output.variant is None


def test_ab_request_from_settings_tags_variants() -> None:
    book = ProfileBook(InMemoryKeyValueStore())
    profile = book.add_profile({"name": "Terse", "syntax": "html", "system_instruction": "Be terse."})
    orchestrator = _orchestrator(
        HandlerTransport(_fenced_html),
        settings=Settings(use_supercharge=False, ab_test_enabled=True, ab_test_profile_id=profile.id),
        book=book,
    )

    request = orchestrator.build_request("hero", config_id="html")
    final = asyncio.run(orchestrator.generate(request))

    assert request.is_ab_test is True
    assert final.is_ab_test is True
    assert [(item.config_id, item.variant) for item in final.outputs] == [
        ("html", "A"),
        (profile.id, "B"),
    ]


def test_one_failing_task_does_not_affect_its_siblings() -> None:
    book = ProfileBook(InMemoryKeyValueStore())
    profile = book.add_profile({"name": "Broken", "system_instruction": "FAIL"})

    def _handler(payload: GenerateRequest) -> GenerationResult:
        if payload.system_instruction == "FAIL":
            raise TransportError("upstream 500")
        return GenerationResult(text="```html\n<p>ok</p>\n```")

    orchestrator = _orchestrator(HandlerTransport(_handler), book=book)
    request = GenerationRequest(
        prompt="hero",
        target_configs=(TargetConfig(config_id="html"), TargetConfig(config_id=profile.id)),
    )

    final = asyncio.run(orchestrator.generate(request))
    good, bad = final.outputs

    assert good.got_error is False and good.output_data == "<p>ok</p>"
    assert bad.got_error is True
    assert bad.is_busy is False
    assert bad.output_data is None
    assert "upstream 500" in bad.error_message


def test_configuration_error_skips_only_that_slot() -> None:
    orchestrator = _orchestrator(HandlerTransport(_fenced_html))
    request = GenerationRequest(
        prompt="hero",
        target_configs=(TargetConfig(config_id="html"), TargetConfig(config_id="deleted-profile")),
        batch_size=2,
    )

    final = asyncio.run(orchestrator.generate(request))

    assert [item.config_id for item in final.outputs] == ["html", "html"]
    assert all(item.output_data == "<h1>hi</h1>" for item in final.outputs)


def test_results_for_a_removed_round_are_dropped() -> None:
    release = asyncio.Event()

    class GatedTransport:
        async def generate(self, payload: GenerateRequest) -> GenerationResult:
            await release.wait()
            return GenerationResult(text="late")

    orchestrator = _orchestrator(GatedTransport())

    async def _run():
        snapshot = orchestrator.dispatch(orchestrator.build_request("hero", config_id="html"))
        await asyncio.sleep(0)
        removed = orchestrator.remove_round(snapshot.id)
        release.set()
        await orchestrator.wait(snapshot.id)
        return snapshot, removed

    snapshot, removed = asyncio.run(_run())

    assert removed is True
    assert orchestrator.store.get_round(snapshot.id) is None
    assert orchestrator.store.list_rounds() == []


def test_function_call_response_is_stored_as_json() -> None:
    call = {"name": "get_weather", "args": {"city": "Oslo"}}
    orchestrator = _orchestrator(
        HandlerTransport(lambda _: GenerationResult(text="", function_call=call))
    )

    final = asyncio.run(orchestrator.generate(orchestrator.build_request("weather?", config_id="json")))
    output = final.outputs[0]

    assert output.is_function_call is True
    assert json.loads(output.output_data) == {"functionCall": call}
    assert output.output_data == json.dumps({"functionCall": call}, indent=2)


def test_image_mode_folds_instruction_into_prompt() -> None:
    transport = HandlerTransport(lambda _: GenerationResult(text="data:image/png;base64,AAAA"))
    orchestrator = _orchestrator(transport, settings=Settings(use_supercharge=True))

    final = asyncio.run(orchestrator.generate(orchestrator.build_request("a fox", config_id="image")))

    request = transport.calls[0]
    assert request.image_output is True
    assert request.model == "imagen-3.0-generate-002"
    assert request.prompt.endswith("a fox")
    assert request.system_instruction is None
    assert final.outputs[0].output_data == "data:image/png;base64,AAAA"


def test_renderable_code_mode_goes_through_refinement() -> None:
    def _handler(payload: GenerateRequest) -> GenerationResult:
        if payload.system_instruction == prompts.CRITIQUE_SYSTEM_INSTRUCTION:
            return GenerationResult(text="perfect")
        return GenerationResult(text="```python\nprint('hi')\n```")

    harness = NoErrorHarness()
    transport = HandlerTransport(_handler)
    orchestrator = _orchestrator(transport, settings=Settings(use_supercharge=True), harness=harness)

    final = asyncio.run(orchestrator.generate(orchestrator.build_request("greet", config_id="python")))
    output = final.outputs[0]

    assert len(transport.calls) == 2
    assert harness.calls == [("print('hi')", "python")]
    assert output.output_data == "print('hi')"
    assert output.critique_notes == "**Iteration 1**: Passed with no errors or critiques."
    assert output.status_text is None
    assert output.is_busy is False


def test_non_renderable_code_mode_skips_refinement() -> None:
    transport = HandlerTransport(lambda _: GenerationResult(text="```go\npackage main\n```"))
    harness = NoErrorHarness()
    orchestrator = _orchestrator(transport, settings=Settings(use_supercharge=True), harness=harness)

    final = asyncio.run(orchestrator.generate(orchestrator.build_request("cli", config_id="go")))

    assert len(transport.calls) == 1
    assert harness.calls == []
    assert final.outputs[0].output_data == "package main"


def test_terminal_outputs_ignore_later_patches() -> None:
    orchestrator = _orchestrator(HandlerTransport(_fenced_html))
    final = asyncio.run(orchestrator.generate(orchestrator.build_request("hero", config_id="html")))
    output = final.outputs[0]

    applied = orchestrator.store.apply(
        OutputPatch(round_id=final.id, output_id=output.id, changes={"output_data": "stale"})
    )

    assert applied is False
    assert orchestrator.store.get_round(final.id).outputs[0].output_data == "<h1>hi</h1>"


def test_enhance_prompt_uses_higher_temperature() -> None:
    transport = HandlerTransport(lambda _: GenerationResult(text="  A vivid hero banner.  "))
    orchestrator = _orchestrator(transport)

    enhanced = asyncio.run(orchestrator.enhance_prompt("hero"))

    assert enhanced == "A vivid hero banner."
    assert transport.calls[0].temperature == 0.7
    assert transport.calls[0].prompt == 'Original prompt: "hero"'


def test_check_code_returns_failure_as_message() -> None:
    def _handler(_: GenerateRequest) -> GenerationResult:
        raise TransportError("offline")

    orchestrator = _orchestrator(HandlerTransport(_handler))

    review = asyncio.run(orchestrator.check_code("print(1)", "python"))

    assert review.startswith("An error occurred while checking the code")
    assert "offline" in review


def test_chat_without_hybrid_answers_with_markdown() -> None:
    transport = HandlerTransport(lambda _: GenerationResult(text="**Hello!**"))
    orchestrator = _orchestrator(transport, settings=Settings(use_hybrid_chat=False))

    reply = asyncio.run(orchestrator.send_chat_message("hi"))

    assert reply.is_thinking is False
    (response,) = reply.responses
    assert response.config_id == "markdown"
    assert response.variant is None
    assert response.content == "**Hello!**"
    assert response.notes == "Direct response from a single agent."
    assert response.review == "N/A"
    assert response.got_error is False
    assert [item.role for item in orchestrator.store.list_chat()] == ["user", "model"]


def test_hybrid_chat_answers_with_sidebar_mode() -> None:
    transport = HandlerTransport(lambda _: GenerationResult(text="```go\npackage main\n```"))
    orchestrator = _orchestrator(
        transport, settings=Settings(use_hybrid_chat=True, default_mode="go")
    )

    reply = asyncio.run(orchestrator.send_chat_message("cli"))

    assert [item.config_id for item in reply.responses] == ["go"]
    # Chat keeps the raw reply; fences are left for the client to render.
    assert reply.responses[0].content == "```go\npackage main\n```"


def test_chat_ab_test_collects_both_variants_on_one_message() -> None:
    book = ProfileBook(InMemoryKeyValueStore())
    profile = book.add_profile({"name": "Pirate", "system_instruction": "Talk like a pirate."})

    def _handler(payload: GenerateRequest) -> GenerationResult:
        if payload.system_instruction == "Talk like a pirate.":
            return GenerationResult(text="Ahoy!")
        return GenerationResult(text="Hello.")

    orchestrator = _orchestrator(
        HandlerTransport(_handler),
        settings=Settings(use_hybrid_chat=False, ab_test_enabled=True, ab_test_profile_id=profile.id),
        book=book,
    )

    reply = asyncio.run(orchestrator.send_chat_message("greet me"))

    assert sorted((item.variant, item.content) for item in reply.responses) == [
        ("A", "Hello."),
        ("B", "Ahoy!"),
    ]
    assert {item.profile_name for item in reply.responses} == {"Markdown", "Pirate"}


def test_chat_failure_is_isolated_to_its_response() -> None:
    book = ProfileBook(InMemoryKeyValueStore())
    profile = book.add_profile({"name": "Broken", "system_instruction": "FAIL"})

    def _handler(payload: GenerateRequest) -> GenerationResult:
        if payload.system_instruction == "FAIL":
            raise TransportError("upstream 500")
        return GenerationResult(text="fine")

    orchestrator = _orchestrator(HandlerTransport(_handler), settings=Settings(use_hybrid_chat=False), book=book)

    reply = asyncio.run(orchestrator.send_chat_message("hi", ab_profile_id=profile.id))
    by_variant = {item.variant: item for item in reply.responses}

    assert reply.is_thinking is False
    assert by_variant["A"].content == "fine"
    assert by_variant["A"].got_error is False
    assert by_variant["B"].got_error is True
    assert by_variant["B"].content == "Sorry, I encountered an error."
    assert by_variant["B"].review == "The agent failed to respond."
    assert "upstream 500" in by_variant["B"].notes


def test_chat_with_unknown_profile_still_settles_thinking() -> None:
    orchestrator = _orchestrator(HandlerTransport(lambda _: GenerationResult(text="x")))

    reply = asyncio.run(orchestrator.send_chat_message("hi", config_id="deleted-profile"))

    assert reply.responses == []
    assert reply.is_thinking is False


def test_chat_code_profile_goes_through_refinement() -> None:
    def _handler(payload: GenerateRequest) -> GenerationResult:
        if payload.system_instruction == prompts.CRITIQUE_SYSTEM_INSTRUCTION:
            return GenerationResult(text="perfect")
        return GenerationResult(text="```python\nprint('hi')\n```")

    harness = NoErrorHarness()
    orchestrator = _orchestrator(
        HandlerTransport(_handler), settings=Settings(use_supercharge=True), harness=harness
    )

    reply = asyncio.run(orchestrator.send_chat_message("greet", config_id="python"))
    (response,) = reply.responses

    assert harness.calls == [("print('hi')", "python")]
    assert response.content == "print('hi')"
    assert response.notes == "This code was improved using the Supercharge self-correction process."
    assert response.review == "**Iteration 1**: Passed with no errors or critiques."


def test_chat_keeps_grounding_metadata() -> None:
    grounding = {"webSearchQueries": ["weather oslo"]}
    transport = HandlerTransport(
        lambda _: GenerationResult(text="Sunny.", grounding_metadata=grounding)
    )
    orchestrator = _orchestrator(
        transport, settings=Settings(use_hybrid_chat=False, use_web_grounding=True)
    )

    reply = asyncio.run(orchestrator.send_chat_message("weather?"))

    assert transport.calls[0].tools == [{"googleSearch": {}}]
    assert reply.responses[0].grounding_metadata == grounding


def test_new_session_archives_chat_history() -> None:
    orchestrator = _orchestrator(HandlerTransport(lambda _: GenerationResult(text="ok")))
    orchestrator.store.persistence = InMemoryKeyValueStore()

    asyncio.run(orchestrator.send_chat_message("remember this"))
    (entry,) = orchestrator.store.start_new_session()

    assert entry.type == "chat"
    assert entry.preview == "remember this"
    assert orchestrator.store.list_chat() == []


def test_close_stops_the_patch_consumer() -> None:
    orchestrator = _orchestrator(HandlerTransport(_fenced_html))

    async def _run():
        await orchestrator.generate(orchestrator.build_request("hero", config_id="html"))
        consumer = orchestrator.patches._consumer
        await orchestrator.aclose()
        return consumer

    consumer = asyncio.run(_run())

    assert consumer is not None and consumer.done()
    assert orchestrator.patches._consumer is None
