import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "FieldFlow Backend"
    env: str = "dev"
    secret_key: str
    access_token_expire_minutes: int = 60

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # AUTOMATION QUEUE
    automation_queue_max_attempts: int = Field(default=3, ge=1, le=20)
    automation_retry_base_seconds: int = Field(default=30, ge=1, le=86400)
    automation_retry_max_seconds: int = Field(default=3600, ge=1, le=86400)
    automation_stale_claim_seconds: int = Field(default=300, ge=10, le=86400)
    automation_claim_batch_size: int = Field(default=10, ge=1, le=500)
    automation_completed_retention_days: int = Field(default=7, ge=1)
    automation_failed_retention_days: int = Field(default=3, ge=1)
    automation_trigger_retention_days: int = Field(default=30, ge=1)

    # AUTOMATION WORKERS
    automation_workers_enabled: bool = False
    automation_worker_count: int = Field(default=2, ge=1, le=32)
    automation_worker_poll_seconds: float = Field(default=5.0, gt=0)
    automation_scheduler_poll_seconds: float = Field(default=60.0, gt=0)
    automation_scheduler_batch_size: int = Field(default=200, ge=1, le=5000)

    # COLLABORATORS
    ghl_base_url: str = "https://services.leadconnectorhq.com"
    ghl_api_version: str = "2021-07-28"
    ably_api_key: str | None = None
    ably_rest_url: str = "https://rest.ably.io"
    openweather_api_key: str | None = None
    openweather_base_url: str = "https://api.openweathermap.org/data/2.5"
    messaging_provider_default: str = "ghl"
    http_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    booking_widget_base_url: str = "https://updates.leadprospecting.ai/widget/booking"
    contract_valid_days: int = Field(default=90, ge=1, le=3650)
    cron_secret: str | None = None
    api_timeout_hint_ms: int = Field(default=300000, ge=1000, le=1_800_000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: Union[str, List[str], None]) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            raw = value.strip()
            if raw.startswith("["):
                value = json.loads(raw)
                if not isinstance(value, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
            else:
                value = raw.split(",")
        if not isinstance(value, list):
            raise ValueError(value)
        return [str(origin).strip() for origin in value if str(origin).strip()]

    @field_validator(
        "ably_api_key",
        "openweather_api_key",
        "cron_secret",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        if self.automation_retry_max_seconds < self.automation_retry_base_seconds:
            raise ValueError("AUTOMATION_RETRY_MAX_SECONDS must be >= AUTOMATION_RETRY_BASE_SECONDS")
        return self

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_secrets = {
            "",
            "change_me",
            "dev-secret-key-change-before-prod",
        }
        if self.secret_key.strip() in weak_secrets or len(self.secret_key.strip()) < 32:
            raise ValueError("SECRET_KEY must be a strong random value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if not self.cron_secret or len(self.cron_secret) < 16:
            raise ValueError("CRON_SECRET must be set to a long random value in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
