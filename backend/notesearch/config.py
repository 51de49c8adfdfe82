# pydantic-settings 기반 애플리케이션 설정

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Work-note search application settings.

    All values are loaded from environment variables.
    A .env file in the backend directory is also supported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Database ---
    DATABASE_URL: str = "postgresql+asyncpg://worknote:worknote@db:5432/worknote"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # --- Embeddings ---
    OPENAI_API_KEY: str = ""
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSION: int = 1536
    EMBEDDING_SERVICE_URL: str = ""  # Local embedding service (overrides OpenAI when set)

    # --- Search ---
    SEARCH_DEFAULT_LIMIT: int = 20
    SEARCH_MAX_LIMIT: int = 100
    SEARCH_ADAPTER_TIMEOUT_SECONDS: float = 5.0
    SEARCH_CANDIDATE_MULTIPLIER: int = 2
    SEARCH_PARAMS: dict[str, Any] = {}  # JSON overrides for search.params

    # --- Embedding retry queue ---
    EMBEDDING_MAX_ATTEMPTS: int = 3
    EMBEDDING_BACKOFF_BASE_SECONDS: float = 2.0
    EMBEDDING_BACKOFF_MAX_SECONDS: float = 3600.0
    EMBEDDING_RESET_ATTEMPTS_ON_RETRY: bool = False

    # --- Embedding worker ---
    WORKER_BATCH_SIZE: int = 10
    WORKER_POLL_INTERVAL_SECONDS: float = 5.0
    WORKER_LEASE_SECONDS: float = 300.0

    LOG_LEVEL: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses the asyncpg driver."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton."""
    return Settings()
