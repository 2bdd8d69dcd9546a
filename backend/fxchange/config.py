"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ── Database ─────────────────────────────────────────────────────────────
    # SQLite for local dev; swap to a Postgres URL for production:
    #   postgresql+psycopg://fx:fx@localhost:5432/fxchange
    DATABASE_URL: str = "sqlite:///./fxchange.db"

    # ── Auth ─────────────────────────────────────────────────────────────────
    SECRET_KEY: str = "fxchange-dev-secret-change-in-prod"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list of allowed origins.
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # ── Logging / errors ─────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "./logs"
    # When False, unexpected errors never expose internals to clients.
    DEBUG: bool = False

    # ── Economy ───────────────────────────────────────────────────────────────
    DEFAULT_POINT: int = 0
    DEFAULT_REPUTATION: int = 100
    REPUTATION_REWARD: int = 3
    REPUTATION_PENALTY: int = 5
    REPUTATION_FLOOR: int = 40
    REPUTATION_CEILING: int = 100

    # ── Transaction lifecycle ─────────────────────────────────────────────────
    PICKUP_DEADLINE_DAYS: int = 3
    RECEIVED_EXTENSION_DAYS: int = 2
    ISSUE_EXTENSION_DAYS: int = 7
    NON_PICKUP_DEADLINE_DAYS: int = 7
    FEEDBACK_WINDOW_DAYS: int = 20
    TRANSACTION_TIMEOUT_SECONDS: float = 10.0

    # ── Scheduler ─────────────────────────────────────────────────────────────
    SCHED_ENABLE: bool = True
    SCHED_TIMEZONE: str = "Asia/Ho_Chi_Minh"
    # Daily at 00:00
    SCHED_CRON_TRANSACTIONS: str = "0 0 * * *"
    OUTBOX_POLL_SECONDS: int = 5

    # ── Outbox (notifications / email) ────────────────────────────────────────
    EMAIL_DELAY_SECONDS: int = 10
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BACKOFF_SECONDS: int = 30
    PUBLIC_BASE_URL: str = "https://www.fxchange.me"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
