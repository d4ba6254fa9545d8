"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "vox-console"
    log_level: str = "INFO"
    database_url: str = ""
    project_id: str = "00000000-0000-0000-0000-000000000001"
    conversation_id: str = "00000000-0000-0000-0000-000000000002"
    seed_defaults: bool = True
    orchestrator_url: str = "http://127.0.0.1:8000/orchestrator"
    orchestrator_api_key: str = ""
    request_timeout_s: float = Field(default=60.0, ge=0.5)
    gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    gateway_api_key: str = ""
    gateway_model: str = "google/gemini-3-flash-preview"

    model_config = SettingsConfigDict(
        env_prefix="VOX_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
