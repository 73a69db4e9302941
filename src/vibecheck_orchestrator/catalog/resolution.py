"""Resolve a mode or profile id into the concrete configuration of one generation task."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal

from vibecheck_orchestrator.catalog.models import get_model
from vibecheck_orchestrator.catalog.modes import NON_CODE_SYNTAXES, BuiltinMode, resolve_modifier
from vibecheck_orchestrator.catalog.profiles import Catalog, UserProfile
from vibecheck_orchestrator.config.settings import Settings
from vibecheck_orchestrator.errors import ConfigurationError
from vibecheck_orchestrator.llm.transport import GenerateRequest

WEB_GROUNDING_TOOLS: list[dict[str, Any]] = [{"googleSearch": {}}]


@dataclass(frozen=True)
class TaskConfig:
    config_id: str
    source: Literal["builtin", "profile"]
    name: str
    icon: str
    syntax: str
    is_renderable: bool
    image_output: bool
    model_key: str
    model: str
    system_instruction: str
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    tools: list[dict[str, Any]] | None = None
    response_schema: dict[str, Any] | None = None
    response_modifier: Callable[[str], str] | None = None

    @property
    def is_correctable(self) -> bool:
        return (
            not self.image_output
            and bool(self.syntax)
            and self.syntax not in NON_CODE_SYNTAXES
        )

    def apply_modifier(self, text: str) -> str:
        if self.response_modifier is None:
            return text
        return self.response_modifier(text)

    def build_request(self, prompt: str, *, prompt_image: str | None = None) -> GenerateRequest:
        """Direct-path request: one call, optional tool/schema binding."""
        if self.image_output:
            image_prompt = (
                f"{self.system_instruction}\n\n{prompt}" if self.system_instruction else prompt
            )
            return GenerateRequest(model=self.model, prompt=image_prompt, image_output=True)
        return GenerateRequest(
            model=self.model,
            prompt=prompt,
            system_instruction=self.system_instruction or None,
            prompt_image=prompt_image,
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            response_schema=self.response_schema,
            tools=self.tools,
        )


def resolve_task_config(config_id: str, *, catalog: Catalog, settings: Settings) -> TaskConfig:
    entry = catalog.lookup(config_id)
    if entry is None:
        raise ConfigurationError(f"Selected mode/profile not found: {config_id}")

    if isinstance(entry, UserProfile):
        model_key = entry.model
        sampling = (entry.temperature, entry.top_p, entry.top_k)
    else:
        model_key = entry.model or settings.default_model
        sampling = (settings.temperature, settings.top_p, settings.top_k)

    model_info = get_model(model_key)
    is_image_model = model_info.type == "image"
    if entry.image_output and not is_image_model:
        raise ConfigurationError(
            f"Image mode {config_id!r} selected but text model {model_key!r} is active"
        )
    if not entry.image_output and is_image_model:
        raise ConfigurationError(
            f"Text mode {config_id!r} selected but image model {model_key!r} is active"
        )
    if is_image_model:
        sampling = (None, None, None)

    system_instruction = entry.system_instruction or settings.default_system_instruction
    if isinstance(entry, UserProfile):
        system_instruction = _attach_code_files(entry, catalog, system_instruction)

    tools, response_schema = (None, None)
    if not is_image_model:
        tools, response_schema = _resolve_binding(
            entry, catalog, use_web_grounding=settings.use_web_grounding
        )

    temperature, top_p, top_k = sampling
    return TaskConfig(
        config_id=config_id,
        source="profile" if isinstance(entry, UserProfile) else "builtin",
        name=entry.name,
        icon=entry.icon,
        syntax=entry.syntax,
        is_renderable=entry.is_renderable,
        image_output=entry.image_output,
        model_key=model_key,
        model=model_info.model_string,
        system_instruction=system_instruction,
        temperature=temperature,
        top_p=top_p,
        top_k=top_k,
        tools=tools,
        response_schema=response_schema,
        response_modifier=resolve_modifier(entry.response_modifier),
    )


def _attach_code_files(profile: UserProfile, catalog: Catalog, system_instruction: str) -> str:
    attached = [
        code_file
        for code_file in (catalog.profiles.get_code_file(fid) for fid in profile.code_file_ids)
        if code_file is not None
    ]
    if not attached:
        return system_instruction
    files_context = "\n\n".join(
        f"## File: {item.name} ({item.language})\n```{item.language}\n{item.content}\n```"
        for item in attached
    )
    return f"Here is some context from attached files:\n\n{files_context}\n\n---\n\n{system_instruction}"


def _resolve_binding(
    entry: BuiltinMode | UserProfile,
    catalog: Catalog,
    *,
    use_web_grounding: bool,
) -> tuple[list[dict[str, Any]] | None, dict[str, Any] | None]:
    # Grounding and tool/schema binding are mutually exclusive; grounding wins.
    if use_web_grounding:
        return [dict(item) for item in WEB_GROUNDING_TOOLS], None
    if not entry.api_id:
        return None, None

    api = catalog.profiles.get_api(entry.api_id)
    if api is None:
        raise ConfigurationError(f"API definition not found: {entry.api_id}")
    definition = api.parsed()
    if api.type == "schema":
        if not isinstance(definition, dict):
            raise ConfigurationError(f"Schema definition {api.name!r} must be a JSON object")
        return None, definition

    if isinstance(definition, dict):
        definition = [definition]
    if not isinstance(definition, list) or not all(isinstance(i, dict) for i in definition):
        raise ConfigurationError(f"Tools definition {api.name!r} must be a list of objects")
    return definition, None
