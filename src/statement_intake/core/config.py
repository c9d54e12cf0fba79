from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"

    database_url: str = "sqlite:///./statement_intake.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "statement-intake"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    # Reasoning capability (OpenAI-compatible chat completions endpoint)
    ai_api_key: str | None = None
    ai_base_url: str = "https://api.openai.com/v1"
    ai_model: str = "gpt-4o"
    ai_max_tokens: int = 4096
    ai_request_timeout_seconds: float = 60.0

    classification_max_chars: int = 15000
    classification_head_pages: int = 3
    classification_warn_below: int = 70

    chunk_threshold_bytes: int = 5 * 1024 * 1024
    chunk_page_timeout_seconds: float = 45.0
    chunk_total_timeout_seconds: float = 15 * 60.0
    chunk_max_retries: int = 3
    chunk_retry_base_delay_seconds: float = 1.0
    chunk_retry_max_delay_seconds: float = 8.0
    chunk_max_pages: int = 50
    chunk_skip_failed_pages: bool = True
    chunk_min_successful_pages: int = 1

    image_max_dimension: int = 2000

    merge_prefer: Literal["pricing", "statement"] = "pricing"


settings = Settings()
