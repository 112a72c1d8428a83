"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./priority_inbox.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Gmail tokens - pickled google.oauth2 Credentials, provisioned out of band.
    # If set, per-user tokens live at TOKEN_DIR/token_<user_id>.pickle (recommended for multi-user).
    token_path: str = "token.pickle"
    token_dir: Optional[str] = None

    # Primary inbox filter; the lookback window is appended as newer_than:<days>d
    gmail_primary_query: str = "in:inbox category:primary -is:chat"

    # Initial index build
    initial_sync_days: int = 30
    initial_sync_max_threads: int = 1000
    # Parallel threads.get calls during sync
    sync_metadata_concurrency: int = 6
    # history.list page size for incremental sync
    sync_history_page_limit: int = 500

    # Prioritization scheduler
    priority_debounce_ms: int = 90_000
    priority_followup_ms: int = 30_000

    # Prioritization worker guardrails
    max_threads_per_batch: int = 200
    max_total_chars_per_batch: int = 1_200_000
    max_chars_per_thread: int = 25_000
    max_messages_per_thread: int = 10
    batch_time_budget_seconds: float = 60
    # Bump to force a re-score of every thread
    priority_score_version: str = "priority-v1"

    # AI - set OPENAI_API_KEY for LLM scoring; heuristic scoring otherwise
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.0

    # Redis (for Celery and the optional content cache)
    redis_url: str = "redis://localhost:6379/0"
    redis_content_cache: bool = True
    content_cache_ttl_hours: int = 24

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Batch sync job (periodic multi-user sync)
    batch_sync_active_days: int = 30
    batch_sync_min_interval_minutes: int = 30
    batch_sync_max_users: int = 200
    batch_sync_concurrency: int = 3

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
