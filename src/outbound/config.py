"""Runtime settings for the delivery pipeline.

Defaults mirror the throughput limits the transport tolerates in practice.
Every value can be overridden with an ``OUTBOUND_<NAME>`` environment
variable, e.g. ``OUTBOUND_MAX_PER_MINUTE=10``.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OUTBOUND_", extra="ignore")

    # Rate limiting (used when a channel has no RateLimitConfig row)
    max_per_minute: int = Field(default=15, ge=1)
    max_per_hour: int = Field(default=200, ge=1)
    min_delay_between_sends_ms: int = Field(default=3000, ge=0)
    send_window_start: str | None = Field(default="08:00", pattern=r"^\d{2}:\d{2}$")
    send_window_end: str | None = Field(default="20:00", pattern=r"^\d{2}:\d{2}$")
    respect_send_window: bool = True
    timezone: str = "UTC"

    # Retry / backoff
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=10.0, gt=0)
    backoff_cap_seconds: float = Field(default=900.0, gt=0)
    backoff_jitter_seconds: float = Field(default=5.0, ge=0)

    # Drain loop
    batch_size: int = Field(default=50, ge=1)
    max_inline_wait_seconds: float = Field(default=10.0, ge=0)
    claim_ttl_seconds: int = Field(default=300, ge=1)
    query_limit: int = Field(default=5000, ge=1)

    # Digest
    digest_interval_minutes: int = Field(default=15, ge=1)
    digest_preview_items: int = Field(default=3, ge=1)

    # Transports (fake senders record messages in memory instead of calling out)
    use_fake_senders: bool = True
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    country_code: str = Field(default="55", pattern=r"^\d{1,3}$")
    chat_api_url: str = ""
    chat_api_token: str = ""
    email_api_url: str = ""
    email_from_address: str = "notifications@example.com"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (cached)."""
    return Settings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
