"""Mode, model, and profile catalogs plus per-task configuration resolution."""

from vibecheck_orchestrator.catalog.models import MODELS, ModelInfo, get_model
from vibecheck_orchestrator.catalog.modes import BUILTIN_MODES, BuiltinMode, get_mode, list_modes
from vibecheck_orchestrator.catalog.profiles import (
    ApiDefinition,
    Catalog,
    CodeFile,
    ProfileBook,
    UserProfile,
)
from vibecheck_orchestrator.catalog.resolution import TaskConfig, resolve_task_config

__all__ = [
    "ApiDefinition",
    "BUILTIN_MODES",
    "BuiltinMode",
    "Catalog",
    "CodeFile",
    "MODELS",
    "ModelInfo",
    "ProfileBook",
    "TaskConfig",
    "UserProfile",
    "get_mode",
    "get_model",
    "list_modes",
    "resolve_task_config",
]
