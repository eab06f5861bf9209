from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    OPENROUTER_API_KEY: Optional[str] = Field(None, description="API key for the completion endpoint")
    LLM_BASE_URL: str = Field("https://openrouter.ai/api/v1", description="OpenAI-compatible API base URL")
    LLM_MODEL: str = "anthropic/claude-sonnet-4"
    LLM_TEMPERATURE: float = 0.3
    LLM_MAX_TOKENS: int = 4096
    LLM_TIMEOUT_SECONDS: float = 120.0

    DATA_DIR: str = Field("./data/source-docs", description="Root of the versioned run store")
    PROMPTS_DIR: Optional[str] = Field(None, description="Directory with prompt overrides")
    LOG_LEVEL: str = "INFO"

    # Capture pacing
    EXPAND_DELAY_MS: int = 1500
    ACTION_DELAY_MS: int = 500
    MAX_EXPANSIONS: int = 50
    FETCH_MAX_ATTEMPTS: int = 3

    # Reject cluster results that drop or duplicate a normalized source
    STRICT_CLUSTER_COVERAGE: bool = True

    # MLflow settings
    MLFLOW_TRACKING_URI: str = Field("http://127.0.0.1:5000", description="MLflow tracking server URI")
    MLFLOW_EXPERIMENT_NAME: str = Field("source_docs", description="MLflow experiment name")
    MLFLOW_ENABLE_TRACING: bool = Field(False, description="Enable MLflow tracing")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

@lru_cache()
def get_settings() -> Settings:
    return Settings()
