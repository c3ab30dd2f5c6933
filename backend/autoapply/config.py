from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/autoapply.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    # OpenAI configuration
    openai_api_key: str = ""
    openai_chat_model: str = "gpt-4o-mini"

    # Capability providers, bound once at startup
    # Embedding provider: "openai", "local" or "mock"
    embedding_provider: str = "openai"
    embedding_model: str = ""
    # Text generation provider: "openai" or "local"
    text_provider: str = "openai"
    # Automation provider: "http" or "dry_run"
    automation_provider: str = "http"
    automation_service_url: str = "http://localhost:8600"

    # Matching weights (must sum to 1.0)
    match_vector_weight: float = 0.6
    match_keyword_weight: float = 0.4
    embedding_concurrency: int = 8
    # Vector store backend: "sql" (embedding columns) or "memory"
    vector_store_backend: str = "sql"
    # Enqueue Celery embedding refresh when a job or resume changes
    precompute_embeddings: bool = False

    # Lifecycle policy
    max_retries: int = 3
    approval_ttl_hours: int = 72  # 0 disables approval expiry
    approval_sweep_minutes: int = 60

    # Worker pool bounds
    max_concurrent_pipelines: int = 8
    max_concurrent_automations: int = 2  # Browser sessions are the scarce resource
    max_concurrent_tailoring: int = 4

    # Per-stage wall-clock budgets (seconds)
    tailor_timeout_seconds: float = 120.0
    automate_timeout_seconds: float = 600.0
    embedding_timeout_seconds: float = 30.0

    # Stage-level retries for transient capability errors
    capability_max_attempts: int = 3
    capability_backoff_seconds: float = 1.0

    # Celery configuration (embedding refresh)
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
