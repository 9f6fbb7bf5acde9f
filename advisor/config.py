"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: str = Field(..., alias="OPENAI_API_KEY")
    llm_model: str = Field(default="gpt-4o-mini", alias="LLM_MODEL")
    llm_base_url: str = Field(default="https://api.openai.com/v1", alias="LLM_BASE_URL")
    embedding_model: str = Field(default="text-embedding-3-small", alias="EMBEDDING_MODEL")
    database_path: Path = Field(default=Path("advisor.db"), alias="DATABASE_PATH")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    agent_max_iterations: int = Field(default=10, alias="AGENT_MAX_ITERATIONS")
    agent_temperature: float = Field(default=0.7, alias="AGENT_TEMPERATURE")
    agent_max_tokens: int = Field(default=2000, alias="AGENT_MAX_TOKENS")

    proactive_max_iterations: int = Field(default=5, alias="PROACTIVE_MAX_ITERATIONS")
    proactive_auto_execute: bool = Field(default=True, alias="PROACTIVE_AUTO_EXECUTE")
    # Zero disables the per-user cap on automatic actions.
    proactive_max_actions_per_hour: int = Field(default=10, alias="PROACTIVE_MAX_ACTIONS_PER_HOUR")

    rag_chunk_size: int = Field(default=1500, alias="RAG_CHUNK_SIZE")
    rag_chunk_overlap: int = Field(default=200, alias="RAG_CHUNK_OVERLAP")
    rag_min_chunk_size: int = Field(default=100, alias="RAG_MIN_CHUNK_SIZE")
    rag_min_score: float = Field(default=0.3, alias="RAG_MIN_SCORE")

    task_max_steps_per_advance: int = Field(default=20, alias="TASK_MAX_STEPS_PER_ADVANCE")
    poll_interval_seconds: float = Field(default=90.0, alias="POLL_INTERVAL_SECONDS")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
