from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Key-value store
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    store_key_prefix: str = "rewards"
    store_retry_attempts: int = 3
    store_retry_base_seconds: float = 0.1
    store_retry_multiplier: float = 2.0

    # Ledger
    ledger_max_attempts: int = 5

    # Referral + VIP rewards
    referral_reward_points: int = 1
    vip_multiplier_silver: float = 1.5
    vip_multiplier_gold: float = 2.0
    vip_multiplier_platinum: float = 3.0

    # Daily rewards
    daily_reward_base_points: int = 2
    daily_reward_max_streak_bonus: int = 3

    # Broadcasts
    broadcast_send_delay_seconds: float = 0.05
    broadcast_progress_batch_size: int = 10
    broadcast_failure_rate_threshold: float = 0.9
    broadcast_failure_min_sample: int = 50
    broadcast_active_window_hours: int = 24

    # Chat transport
    telegram_bot_token: str = ""
    telegram_bot_username: str = ""
    required_channels: Annotated[list[str], NoDecode] = Field(default_factory=list)
    admin_ids: Annotated[list[str], NoDecode] = Field(default_factory=list)
    logs_channel: str | None = None

    # Admin API
    admin_api_key: str | None = None

    @field_validator("required_channels", "admin_ids", mode="before")
    @classmethod
    def _parse_csv_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, (int, float)):
            return [str(value)]
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Key expiry notifications
    expiry_notifier_enabled: bool = False
    expiry_notifier_interval_seconds: int = 60 * 60
    expiry_notifier_window_hours: int = 24

    # Live support
    support_transcript_retention: int = 10


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
