"""Static table of generative models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

from vibecheck_orchestrator.errors import ConfigurationError

ModelType = Literal["text", "image"]


class ModelInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    model_string: str
    type: ModelType


MODELS: dict[str, ModelInfo] = {
    "gemini-2.5-flash": ModelInfo(
        key="gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        model_string="gemini-2.5-flash",
        type="text",
    ),
    "imagen-3.0-generate-002": ModelInfo(
        key="imagen-3.0-generate-002",
        name="Imagen 3",
        model_string="imagen-3.0-generate-002",
        type="image",
    ),
}


def get_model(model_key: str) -> ModelInfo:
    info = MODELS.get(model_key)
    if info is None:
        raise ConfigurationError(f"Unknown model: {model_key}")
    return info

