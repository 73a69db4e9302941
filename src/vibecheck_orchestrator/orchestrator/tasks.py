"""Requests and the generation tasks they expand into."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

from vibecheck_orchestrator.catalog.resolution import TaskConfig
from vibecheck_orchestrator.session.models import Variant


class TargetConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    config_id: str = Field(min_length=1)
    variant: Variant | None = None


class GenerationRequest(BaseModel):
    """One user submission; immutable once built."""

    model_config = ConfigDict(frozen=True)

    prompt: str = Field(min_length=1)
    prompt_image: str | None = None
    target_configs: tuple[TargetConfig, ...] = Field(min_length=1)
    batch_size: int = Field(default=1, ge=1, le=8)

    @property
    def is_ab_test(self) -> bool:
        return any(target.variant == "B" for target in self.target_configs)


@dataclass(frozen=True)
class GenerationTask:
    """Unit of concurrent work; its id is the id of the output it fills."""

    task_id: str
    round_id: str
    batch_index: int
    variant: Variant | None
    prompt: str
    prompt_image: str | None
    config: TaskConfig
