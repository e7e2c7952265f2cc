"""Application configuration via pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All runtime configuration, loaded from environment / .env file.

    Pipeline tuning (weights, thresholds, chunk sizes) is not configured here;
    it is derived per request by :func:`answer_search.pipeline.modes.get_config`.
    """

    anthropic_api_key: str = ""
    chat_model: str = "claude-haiku-4-5"
    chat_max_tokens: int = 2048
    searxng_url: str = "http://localhost:8888"
    redis_url: str = "redis://localhost:6379/0"
    default_mode: str = "quick"
    enable_local_embeddings: bool = False
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    document_fetch_timeout: float = 8.0
    max_documents_per_url: int = 3
    port: int = 7777
    log_level: str = "INFO"
    environment: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


# Module-level singleton; imported everywhere.
settings = Settings()
