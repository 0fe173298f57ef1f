import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/ads_engine"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Railway/Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    encryption_key: str = ""
    # Comma-separated origins allowed to call the API from a browser
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Meta Marketing API
    meta_graph_api_version: str = "v21.0"
    meta_graph_base_url: str = "https://graph.facebook.com"
    meta_app_id: str = ""
    meta_app_secret: str = ""

    # Winner detection (mode-independent)
    winner_min_spend: float = 10.0
    winner_min_impressions: int = 1000
    winner_improvement_pct: float = 15.0
    metrics_lookback_days: int = 7
    promotion_cooldown_hours: int = 72

    # Pulse defaults (conservative)
    pulse_daily_budget: float = 20.0
    pulse_test_lane_pct: float = 30.0
    pulse_rotation_days: int = 7
    pulse_scale_step_pct: float = 10.0
    pulse_cooldown_hours: int = 48
    pulse_max_daily_budget: float = 100.0

    # Momentum defaults (aggressive)
    momentum_starting_budget: float = 50.0
    momentum_max_daily_budget: float = 500.0
    momentum_scale_step_pct: float = 20.0
    momentum_cooldown_hours: int = 24

    # Ad platform call policy
    platform_max_attempts: int = 4
    platform_backoff_base: float = 0.5
    platform_backoff_max: float = 8.0
    platform_timeout_seconds: float = 30.0

    # Runs
    run_lock_timeout_minutes: int = 30
    cron_max_concurrency: int = 4

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.cron_secret:
                raise ValueError("CRON_SECRET must be set in production.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        if self.winner_min_spend <= 0:
            raise ValueError("WINNER_MIN_SPEND must be positive")
        if self.winner_improvement_pct < 0:
            raise ValueError("WINNER_IMPROVEMENT_PCT cannot be negative")
        if self.platform_max_attempts < 1:
            raise ValueError("PLATFORM_MAX_ATTEMPTS must be at least 1")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def meta_graph_url(self) -> str:
        return f"{self.meta_graph_base_url.rstrip('/')}/{self.meta_graph_api_version}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
