"""Application settings and configuration.

This module defines all configuration options for the Vine Award service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Vine Award", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Message feed (Discord-compatible REST API)
    feed_base_url: str = Field(
        default="https://discord.com/api/v10", alias="VINE_FEED_BASE_URL"
    )
    feed_bot_token: str | None = Field(default=None, alias="DISCORD_BOT_TOKEN")
    feed_page_limit: int = Field(default=100, alias="VINE_FEED_PAGE_LIMIT")
    feed_http_timeout_seconds: float = Field(
        default=10.0, alias="VINE_FEED_HTTP_TIMEOUT_SECONDS"
    )
    coordinator_id: str | None = Field(default=None, alias="VINE_COORDINATOR_ID")
    window_size: int = Field(default=300, alias="VINE_WINDOW_SIZE")
    validate_wallets: bool = Field(default=True, alias="VINE_VALIDATE_WALLETS")

    # Lock protocol
    lock_max_age_seconds: int = Field(default=20 * 60, alias="VINE_LOCK_MAX_AGE_SECONDS")

    # Retry policy for transient feed/ledger failures
    retry_attempts: int = Field(default=4, alias="VINE_RETRY_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=0.5, alias="VINE_RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=8.0, alias="VINE_RETRY_MAX_DELAY_SECONDS")

    # External ledger gateway
    ledger_base_url: str = Field(default="http://localhost:8899", alias="VINE_LEDGER_BASE_URL")
    ledger_http_timeout_seconds: float = Field(
        default=15.0, alias="VINE_LEDGER_HTTP_TIMEOUT_SECONDS"
    )
    default_ledger_id: str | None = Field(default=None, alias="VINE_DAO_ID")
    default_authority_secret: str | None = Field(default=None, alias="VINE_AUTHORITY_SECRET")
    default_payer_secret: str | None = Field(default=None, alias="VINE_PAYER_SECRET")

    # Award execution
    award_amount: int = Field(default=1, alias="VINE_AWARD_AMOUNT")
    award_concurrency: int = Field(default=4, alias="VINE_AWARD_CONCURRENCY")
    award_op_timeout_seconds: float = Field(default=45.0, alias="VINE_AWARD_OP_TIMEOUT_SECONDS")
    award_op_delay_seconds: float = Field(default=0.0, alias="VINE_AWARD_OP_DELAY_SECONDS")
    award_fee_safety_margin: int = Field(default=5_000, alias="VINE_AWARD_FEE_SAFETY_MARGIN")
    award_run_timeout_seconds: float = Field(
        default=240.0, alias="VINE_AWARD_RUN_TIMEOUT_SECONDS"
    )

    # Redis configuration for the job queue and secret store
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    queue_dedupe_ttl_seconds: int = Field(default=30 * 60, alias="VINE_QUEUE_DEDUPE_TTL_SECONDS")
    queue_dedupe_max_age_seconds: int = Field(
        default=15 * 60, alias="VINE_QUEUE_DEDUPE_MAX_AGE_SECONDS"
    )
    queue_done_ttl_seconds: int = Field(
        default=2 * 24 * 60 * 60, alias="VINE_QUEUE_DONE_TTL_SECONDS"
    )
    worker_lock_seconds: int = Field(default=60, alias="AWARD_WORKER_LOCK_SECONDS")
    worker_enabled: bool = Field(default=False, alias="AWARD_WORKER_ENABLED")
    worker_poll_interval_seconds: float = Field(
        default=30.0, alias="AWARD_WORKER_POLL_INTERVAL_SECONDS"
    )
    worker_secret: str | None = Field(default=None, alias="AWARD_WORKER_SECRET")

    # Secret encryption (32-byte key, hex or base64)
    secrets_enc_key: str | None = Field(default=None, alias="VINE_SECRETS_ENC_KEY")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def lock_max_age_ms(self) -> int:
        """Return the lock staleness threshold in milliseconds."""
        return int(self.lock_max_age_seconds) * 1000

    @property
    def effective_worker_secret(self) -> str | None:
        """Return the bearer secret accepted by the worker endpoint.

        Falls back to the bot token so a single secret can drive both.
        """
        return self.worker_secret or self.feed_bot_token


settings = Settings()
