"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "vibecheck-orchestrator"
    app_env: str = "dev"

    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # Sidebar defaults; user profiles override these per task.
    default_mode: str = "html"
    default_model: str = "gemini-2.5-flash"
    critique_model: str = "gemini-2.5-flash"
    temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    top_p: float = Field(default=0.95, ge=0.0, le=1.0)
    top_k: int = Field(default=64, ge=1)
    default_system_instruction: str = ""
    batch_size: int = Field(default=1, ge=1, le=8)

    gateway_concurrency: int = Field(default=8, ge=1)
    gateway_timeout_s: float = Field(default=60.0, gt=0.0)
    gateway_max_attempts: int = Field(default=3, ge=1)
    gateway_base_delay_s: float = Field(default=1.0, ge=0.0)

    sandbox_timeout_s: float = Field(default=3.0, gt=0.0)
    sandbox_node_binary: str = "node"

    refinement_max_iterations: int = Field(default=3, ge=1)
    use_supercharge: bool = True
    use_web_grounding: bool = False
    ab_test_enabled: bool = False
    ab_test_profile_id: str | None = None
    # Chat answers with the sidebar mode when on, plain markdown otherwise.
    use_hybrid_chat: bool = True

    storage_dir: str = ".vibecheck"

    model_config = SettingsConfigDict(
        env_prefix="VIBECHECK_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_gemini_api_key(self) -> str:
        return self.gemini_api_key or os.getenv("GEMINI_API_KEY", "") or os.getenv("API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
