"""Application configuration using Pydantic Settings."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./pbi_analyzer.db"

    # Model gateway (introspection, query execution, tool calls)
    MODEL_GATEWAY_URL: str = "http://localhost:8765"
    MODEL_GATEWAY_TIMEOUT: float = 120.0
    DEFAULT_SERVER_ADDRESS: str = "localhost"

    # Rule catalog
    RULES_URL: str = (
        "https://raw.githubusercontent.com/microsoft/Analysis-Services/master/BestPracticeRules/BPARules.json"
    )
    RULES_PATH: Optional[str] = None  # Local file wins over RULES_URL when set

    # OpenRouter
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    SITE_URL: str = ""
    SITE_NAME: str = "PBI Analyzer"
    FIX_MODEL: str = "openai/gpt-4.1"
    DAX_MODEL: str = "openai/gpt-4.1"

    # Autofix
    FIX_MAX_STEPS: int = 40

    # Queries
    QUERY_TIMEOUT: float = 60.0
    QUERY_POLL_ATTEMPTS: int = 20
    QUERY_POLL_INTERVAL: float = 0.5

    # Worker
    WORKER_MAX_THREADS: int = 8
    JOB_SOFT_TIMEOUT: float = 0.0  # Seconds; 0 disables
    MAX_REMOTE_RETRIES: int = 3

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()
