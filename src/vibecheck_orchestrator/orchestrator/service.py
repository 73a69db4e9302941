"""Generation orchestrator: one request in, one round of independently completing outputs out.

Chat messages take the same path per profile but land as responses on a
single model message instead of outputs on a round.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any
from uuid import uuid4

from vibecheck_orchestrator.catalog.models import get_model
from vibecheck_orchestrator.catalog.profiles import Catalog, ProfileBook
from vibecheck_orchestrator.catalog.resolution import TaskConfig, resolve_task_config
from vibecheck_orchestrator.config.settings import Settings
from vibecheck_orchestrator.errors import ConfigurationError, TransportError
from vibecheck_orchestrator.llm.gateway import ModelGateway
from vibecheck_orchestrator.llm.transport import GeminiTransport, GenerateRequest
from vibecheck_orchestrator.orchestrator.tasks import (
    GenerationRequest,
    GenerationTask,
    TargetConfig,
)
from vibecheck_orchestrator.refinement.loop import RefinementLoop, RefinementUpdate
from vibecheck_orchestrator.sandbox.harness import SandboxHarness, SandboxRunner
from vibecheck_orchestrator.session.models import (
    ChatMessage,
    ChatResponse,
    ChatUpdate,
    Output,
    OutputPatch,
    Round,
)
from vibecheck_orchestrator.session.store import PatchQueue, SessionStore
from vibecheck_orchestrator.storage.base import KeyValueStore
from vibecheck_orchestrator.storage.files import JsonFileKeyValueStore

logger = logging.getLogger(__name__)

CHAT_FALLBACK_MODE = "markdown"
REFINED_CHAT_NOTES = "This code was improved using the Supercharge self-correction process."
DIRECT_CHAT_NOTES = "Direct response from a single agent."

ENHANCE_SYSTEM_INSTRUCTION = (
    "You are a prompt engineering expert. Your task is to take a user's simple prompt and "
    "rewrite it into a more detailed and specific prompt. The enhanced prompt should be more "
    "effective for a generative AI model to create a high-quality, creative, and detailed "
    "output. Focus on adding descriptive details about style, composition, and mood. The "
    "output should only be the new prompt, with no extra text or explanation."
)


def _check_code_instruction(language: str) -> str:
    return (
        f"You are a world-class code linter and static analysis tool. You will be given a "
        f"snippet of code in {language}. Thoroughly analyze the code for syntax errors, "
        "potential runtime bugs, logical flaws, or deviations from best practices. If the code "
        'is completely error-free and of high quality, your ONLY response must be the exact '
        'string "OK". Otherwise provide a concise, professional, bulleted list of the problems '
        "in Markdown format, with no introductory or concluding sentences."
    )


class GenerationOrchestrator:
    """Expand requests into tasks, run them concurrently, and reconcile results by id.

    Every task catches its own failures: an error marks only that task's output
    as errored. Writes for a round the user has removed are dropped.
    """

    def __init__(
        self,
        *,
        gateway: ModelGateway,
        harness: SandboxRunner,
        catalog: Catalog,
        store: SessionStore,
        settings: Settings,
        refinement: RefinementLoop | None = None,
    ) -> None:
        self.gateway = gateway
        self.harness = harness
        self.catalog = catalog
        self.store = store
        self.settings = settings
        self.refinement = refinement or RefinementLoop(
            gateway,
            harness,
            max_iterations=settings.refinement_max_iterations,
            critique_model=get_model(settings.critique_model).model_string,
        )
        self.patches = PatchQueue(store)
        self._inflight: dict[str, set[asyncio.Task[None]]] = {}

    def build_request(
        self,
        prompt: str,
        *,
        config_id: str | None = None,
        prompt_image: str | None = None,
        batch_size: int | None = None,
        ab_profile_id: str | None = None,
    ) -> GenerationRequest:
        """Build a request from explicit choices, falling back to the sidebar settings."""
        primary = config_id or self.settings.default_mode
        if ab_profile_id is None and self.settings.ab_test_enabled:
            ab_profile_id = self.settings.ab_test_profile_id

        if ab_profile_id:
            targets = (
                TargetConfig(config_id=primary, variant="A"),
                TargetConfig(config_id=ab_profile_id, variant="B"),
            )
        else:
            targets = (TargetConfig(config_id=primary),)
        return GenerationRequest(
            prompt=prompt,
            prompt_image=prompt_image,
            target_configs=targets,
            batch_size=batch_size or self.settings.batch_size,
        )

    def dispatch(self, request: GenerationRequest) -> Round:
        """Create the round with every output busy, then start one task per output.

        Must be called from inside a running event loop. Returns a snapshot of
        the round as created.
        """
        round_id = str(uuid4())
        tasks: list[GenerationTask] = []
        outputs: list[Output] = []
        for target in request.target_configs:
            try:
                config = resolve_task_config(
                    target.config_id, catalog=self.catalog, settings=self.settings
                )
            except ConfigurationError as exc:
                logger.error(
                    "round_dispatch event=config_error round_id=%s config_id=%s variant=%s reason=%s",
                    round_id,
                    target.config_id,
                    target.variant,
                    exc,
                )
                continue
            for batch_index in range(request.batch_size):
                output = Output(
                    config_id=target.config_id,
                    mode_name=config.name,
                    mode_icon=config.icon,
                    model_key=config.model_key,
                    variant=target.variant,
                )
                outputs.append(output)
                tasks.append(
                    GenerationTask(
                        task_id=output.id,
                        round_id=round_id,
                        batch_index=batch_index,
                        variant=target.variant,
                        prompt=request.prompt,
                        prompt_image=request.prompt_image,
                        config=config,
                    )
                )

        snapshot = self.store.add_round(
            Round(
                id=round_id,
                prompt=request.prompt,
                prompt_image=request.prompt_image,
                is_ab_test=request.is_ab_test,
                outputs=outputs,
            )
        )
        logger.info(
            "round_dispatch event=start round_id=%s tasks=%d ab_test=%s",
            round_id,
            len(tasks),
            request.is_ab_test,
        )

        running: set[asyncio.Task[None]] = set()
        for task in tasks:
            running.add(asyncio.create_task(self._run_task(task), name=f"generation-{task.task_id}"))
        if running:
            self._inflight[round_id] = running
            for item in running:
                item.add_done_callback(lambda done, rid=round_id: self._forget(rid, done))
        return snapshot

    async def generate(self, request: GenerationRequest) -> Round:
        """Dispatch and wait for every output of the round to finish."""
        snapshot = self.dispatch(request)
        await self.wait(snapshot.id)
        return self.store.get_round(snapshot.id) or snapshot

    async def wait(self, round_id: str) -> None:
        pending = list(self._inflight.get(round_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.patches.join()

    async def drain(self) -> None:
        pending = [task for tasks in self._inflight.values() for task in tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.patches.join()

    async def aclose(self) -> None:
        await self.patches.aclose()

    def remove_round(self, round_id: str) -> bool:
        # In-flight tasks keep running; their writes become no-ops.
        removed = self.store.remove_round(round_id)
        logger.info(
            "round_remove round_id=%s removed=%s inflight=%d",
            round_id,
            removed,
            len(self._inflight.get(round_id, ())),
        )
        return removed

    def dispatch_chat(
        self,
        prompt: str,
        *,
        config_id: str | None = None,
        ab_profile_id: str | None = None,
        hybrid: bool | None = None,
    ) -> ChatMessage:
        """Append the user's message and a thinking reply, then answer it in the background.

        With hybrid chat on the sidebar mode answers; otherwise plain markdown does.
        Returns a snapshot of the thinking reply.
        """
        if hybrid is None:
            hybrid = self.settings.use_hybrid_chat
        primary = config_id or (self.settings.default_mode if hybrid else CHAT_FALLBACK_MODE)
        if ab_profile_id is None and self.settings.ab_test_enabled:
            ab_profile_id = self.settings.ab_test_profile_id

        if ab_profile_id:
            targets = [
                TargetConfig(config_id=primary, variant="A"),
                TargetConfig(config_id=ab_profile_id, variant="B"),
            ]
        else:
            targets = [TargetConfig(config_id=primary)]

        reply = self.store.add_chat_exchange(prompt)
        logger.info(
            "chat_dispatch event=start message_id=%s targets=%s",
            reply.id,
            ",".join(target.config_id for target in targets),
        )
        task = asyncio.create_task(self._run_chat(reply.id, prompt, targets), name=f"chat-{reply.id}")
        self._inflight[reply.id] = {task}
        task.add_done_callback(lambda done, rid=reply.id: self._forget(rid, done))
        return reply

    async def send_chat_message(
        self,
        prompt: str,
        *,
        config_id: str | None = None,
        ab_profile_id: str | None = None,
        hybrid: bool | None = None,
    ) -> ChatMessage:
        """Dispatch a chat message and wait until every profile has answered."""
        reply = self.dispatch_chat(
            prompt, config_id=config_id, ab_profile_id=ab_profile_id, hybrid=hybrid
        )
        await self.wait(reply.id)
        return self.store.get_chat_message(reply.id) or reply

    async def enhance_prompt(self, prompt: str) -> str:
        result = await self.gateway.generate(
            GenerateRequest(
                model=get_model(self.settings.critique_model).model_string,
                system_instruction=ENHANCE_SYSTEM_INSTRUCTION,
                prompt=f'Original prompt: "{prompt}"',
                temperature=0.7,
            )
        )
        return result.text.strip()

    async def check_code(self, code: str, language: str) -> str:
        try:
            result = await self.gateway.generate(
                GenerateRequest(
                    model=get_model(self.settings.critique_model).model_string,
                    system_instruction=_check_code_instruction(language),
                    prompt=f"```{language}\n{code}\n```",
                )
            )
        except TransportError as exc:
            logger.error("check_code event=failed language=%s reason=%s", language, exc)
            return f"An error occurred while checking the code: {exc}"
        return result.text.strip()

    def should_refine(self, config: TaskConfig) -> bool:
        return self.settings.use_supercharge and config.is_correctable and config.is_renderable

    async def _run_task(self, task: GenerationTask) -> None:
        started_at = time.perf_counter()
        refine = self.should_refine(task.config)
        logger.info(
            "generation_task event=start round_id=%s task_id=%s config_id=%s variant=%s path=%s",
            task.round_id,
            task.task_id,
            task.config.config_id,
            task.variant,
            "refine" if refine else "direct",
        )
        try:
            if refine:
                changes = await self._run_refined(task)
            else:
                changes = await self._run_direct(task)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "generation_task event=failed round_id=%s task_id=%s config_id=%s",
                task.round_id,
                task.task_id,
                task.config.config_id,
            )
            self._submit(
                task,
                {
                    "is_busy": False,
                    "got_error": True,
                    "output_data": None,
                    "error_message": str(exc) or exc.__class__.__name__,
                    "status_text": None,
                    "total_time_ms": _duration_ms(started_at),
                },
            )
            return

        changes.update(
            {
                "is_busy": False,
                "got_error": False,
                "status_text": None,
                "total_time_ms": _duration_ms(started_at),
            }
        )
        self._submit(task, changes)
        logger.info(
            "generation_task event=done round_id=%s task_id=%s duration_ms=%.2f",
            task.round_id,
            task.task_id,
            changes["total_time_ms"],
        )

    async def _run_refined(self, task: GenerationTask) -> dict[str, Any]:
        def _on_update(update: RefinementUpdate) -> None:
            changes = update.changes()
            if changes:
                self._submit(task, changes)

        result = await self.refinement.run(
            prompt=task.prompt, config=task.config, on_update=_on_update
        )
        return {
            "output_data": result.artifact,
            "critique_notes": result.critique_log,
            "is_function_call": False,
            "grounding_metadata": None,
        }

    async def _run_direct(self, task: GenerationTask) -> dict[str, Any]:
        response = await self.gateway.generate(
            task.config.build_request(task.prompt, prompt_image=task.prompt_image)
        )
        if response.function_call is not None:
            output_data = json.dumps({"functionCall": response.function_call}, indent=2)
            is_function_call = True
        else:
            output_data = task.config.apply_modifier(response.text)
            is_function_call = False
        return {
            "output_data": output_data,
            "is_function_call": is_function_call,
            "critique_notes": None,
            "grounding_metadata": response.grounding_metadata,
        }

    async def _run_chat(self, message_id: str, prompt: str, targets: list[TargetConfig]) -> None:
        try:
            await asyncio.gather(
                *(self._chat_response(message_id, prompt, target) for target in targets)
            )
        finally:
            self.patches.submit(ChatUpdate(message_id=message_id, is_thinking=False))
        logger.info("chat_dispatch event=done message_id=%s", message_id)

    async def _chat_response(self, message_id: str, prompt: str, target: TargetConfig) -> None:
        try:
            config = resolve_task_config(
                target.config_id, catalog=self.catalog, settings=self.settings
            )
        except ConfigurationError as exc:
            logger.error(
                "chat_dispatch event=config_error message_id=%s config_id=%s variant=%s reason=%s",
                message_id,
                target.config_id,
                target.variant,
                exc,
            )
            return

        profile = {
            "config_id": target.config_id,
            "profile_name": config.name,
            "profile_icon": config.icon,
            "variant": target.variant,
        }
        try:
            if self.should_refine(config):
                result = await self.refinement.run(prompt=prompt, config=config)
                response = ChatResponse(
                    **profile,
                    content=result.artifact,
                    notes=REFINED_CHAT_NOTES,
                    review=result.critique_log,
                )
            else:
                reply = await self.gateway.generate(config.build_request(prompt))
                is_function_call = reply.function_call is not None
                response = ChatResponse(
                    **profile,
                    content=(
                        json.dumps({"functionCall": reply.function_call}, indent=2)
                        if is_function_call
                        else reply.text
                    ),
                    notes=DIRECT_CHAT_NOTES,
                    review="N/A",
                    grounding_metadata=reply.grounding_metadata,
                    is_function_call=is_function_call,
                )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "chat_response event=failed message_id=%s config_id=%s",
                message_id,
                target.config_id,
            )
            response = ChatResponse(
                **profile,
                content="Sorry, I encountered an error.",
                notes=f"Error: {exc}",
                review="The agent failed to respond.",
                got_error=True,
            )
        self.patches.submit(ChatUpdate(message_id=message_id, response=response))

    def _submit(self, task: GenerationTask, changes: dict[str, Any]) -> None:
        self.patches.submit(
            OutputPatch(round_id=task.round_id, output_id=task.task_id, changes=changes)
        )

    def _forget(self, round_id: str, done: asyncio.Task[None]) -> None:
        running = self._inflight.get(round_id)
        if running is None:
            return
        running.discard(done)
        if not running:
            self._inflight.pop(round_id, None)


def build_orchestrator(
    settings: Settings,
    *,
    persistence: KeyValueStore | None = None,
) -> GenerationOrchestrator:
    """Wire the default production stack from settings."""
    persistence = persistence or JsonFileKeyValueStore(settings.storage_dir)
    catalog = Catalog(ProfileBook(persistence))
    transport = GeminiTransport(
        api_key=settings.resolved_gemini_api_key(),
        base_url=settings.gemini_base_url,
    )
    gateway = ModelGateway(
        transport,
        concurrency=settings.gateway_concurrency,
        timeout_s=settings.gateway_timeout_s,
        max_attempts=settings.gateway_max_attempts,
        base_delay_s=settings.gateway_base_delay_s,
    )
    harness = SandboxHarness(
        catalog.lookup,
        timeout_s=settings.sandbox_timeout_s,
        node_binary=settings.sandbox_node_binary,
    )
    return GenerationOrchestrator(
        gateway=gateway,
        harness=harness,
        catalog=catalog,
        store=SessionStore(persistence),
        settings=settings,
    )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
