"""Application settings for the Attic knowledge assistant."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_TOTAL_CHUNKS = 35


class Settings(BaseSettings):
    """Application settings, read from ``ATTIC_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ATTIC_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Core application settings
    app_env: Literal["development", "test", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(default="http://localhost:3000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        if not self.cors_origins_str.strip():
            return ["http://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Language models (any OpenAI-compatible endpoint)
    llm_base_url: str = "http://localhost:1234/v1"
    llm_api_key: str = "lm-studio"
    chat_model: str = "qwen2.5-14b-instruct"
    fast_chat_model: str = "qwen2.5-3b-instruct"
    embedding_model: str = "text-embedding-nomic-embed-text-v1.5"
    llm_temperature: float = 0.7
    auxiliary_timeout_seconds: float = 15.0

    # Storage
    redis_url: str = "redis://localhost:6379/0"
    conversation_ttl_seconds: int = 60 * 60 * 24 * 30
    documents_root: str = "./data/documents"

    # Context window
    max_context_tokens: int = 8000
    context_strategy: Literal["sliding", "token", "smart"] = "smart"
    sliding_window_size: int = 10

    # Retrieval
    max_total_chunks: int = 35
    fast_path_top_k: int = 10
    smart_probe_size: int = 10
    small_document_chunks: int = 5
    significant_portion_ratio: float = 0.3
    smart_search_model_judgment: bool = True

    # Streaming persistence
    persist_interval_seconds: float = 2.0
    persist_min_chars: int = 50

    @field_validator("max_total_chunks", "fast_path_top_k")
    @classmethod
    def validate_chunk_count(cls, v: int) -> int:
        """Result counts must allow at least one chunk and stay under the hard ceiling."""
        if not 1 <= v <= MAX_TOTAL_CHUNKS:
            raise ValueError(f"Chunk counts must be between 1 and {MAX_TOTAL_CHUNKS}")
        return v

    @field_validator("smart_probe_size")
    @classmethod
    def validate_probe_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("smart_probe_size must be at least 1")
        return v

    @field_validator("significant_portion_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("significant_portion_ratio must be in (0, 1]")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
