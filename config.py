"""
config.py — Application configuration.

All settings are loaded from environment variables (via .env file).
Required variables are validated on startup; missing values will raise an error.
"""

import logging
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central configuration for SignalDesk.

    All fields map 1-to-1 to environment variables (case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Application
    # ─────────────────────────────────────────────
    app_name: str = "SignalDesk"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    api_host: str = "http://localhost"
    api_port: int = 8000
    frontend_url: str = "http://localhost:3000"

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./signaldesk.db"
    db_pool_size: int = 20
    db_max_overflow: int = 40
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800  # recycle connections every 30 min

    # ─────────────────────────────────────────────
    # Authentication / JWT
    # ─────────────────────────────────────────────
    jwt_secret_key: str = "change-this-in-production-min-32-chars!!"
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""  # empty = audience not checked

    # ─────────────────────────────────────────────
    # AI / LLM
    # ─────────────────────────────────────────────
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_max_tokens: int = 16384
    anthropic_timeout: float = 180.0        # seconds per batch request
    anthropic_timeout_slow: float = 300.0   # opus-class models
    model_list_ttl: int = 600               # seconds the provider model list is cached

    # ─────────────────────────────────────────────
    # Posts API (twitterapi.io compatible)
    # ─────────────────────────────────────────────
    twitter_api_key: str = ""
    twitter_base_url: str = "https://api.twitterapi.io"
    fetch_max_pages: int = 5
    fetch_page_retries: int = 3
    fetch_account_timeout: float = 90.0   # per-account budget; fits one capped Retry-After wait

    # ─────────────────────────────────────────────
    # Caching
    # ─────────────────────────────────────────────
    post_cache_hours: int = 4             # bucket width of the shared post cache
    inflight_timeout: float = 60.0        # safety cleanup for coalesced fetches
    scan_cache_ttl_hours: int = 24
    local_cache_path: str = ""            # empty = keep the local layer in memory
    local_cache_max_entries: int = 2000
    shared_cache_max_age_days: int = 7

    # ─────────────────────────────────────────────
    # Scanning
    # ─────────────────────────────────────────────
    fetch_concurrency: int = 3            # interactive scans
    server_fetch_concurrency: int = 10    # scheduled scans
    analysis_concurrency: int = 3
    analysis_concurrency_slow: int = 2
    analysis_max_retries: int = 5

    # ─────────────────────────────────────────────
    # Credits
    # ─────────────────────────────────────────────
    free_tier_max_accounts: int = 10
    max_accounts_per_scan: int = 1000
    reservation_ttl_seconds: int = 600

    # ─────────────────────────────────────────────
    # Scheduler
    # ─────────────────────────────────────────────
    scheduler_enabled: bool = True
    scheduler_max_concurrent: int = 5
    scheduled_scan_timeout: float = 480.0   # 8 minutes per scheduled scan
    scheduled_stale_minutes: int = 10
    scheduled_min_gap_minutes: int = 55
    scheduled_due_window_minutes: int = 2

    # ─────────────────────────────────────────────
    # Monitoring
    # ─────────────────────────────────────────────
    sentry_dsn: str = ""

    # ─────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────
    allowed_origins: str = "http://localhost:3000,http://localhost:8080"

    # ─────────────────────────────────────────────
    # Rate Limiting
    # ─────────────────────────────────────────────
    rate_limit_general: str = "100/minute"
    rate_limit_scan: str = "10/minute"

    # ─────────────────────────────────────────────
    # Validators
    # ─────────────────────────────────────────────

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("jwt_secret_key must be at least 32 characters")
        return v

    # ─────────────────────────────────────────────
    # Computed properties
    # ─────────────────────────────────────────────

    @property
    def allowed_origins_list(self) -> List[str]:
        """Return CORS origins as a list."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def use_ssl(self) -> bool:
        """Whether SSL should be enforced (production/staging only)."""
        return self.environment in {"production", "staging"}

    @property
    def db_ssl_args(self) -> dict:
        """Extra SQLAlchemy connect_args for SSL in production."""
        if self.use_ssl and "postgresql" in self.database_url:
            return {"ssl": "require"}
        return {}

    @property
    def scan_cache_ttl_seconds(self) -> int:
        return self.scan_cache_ttl_hours * 3600


@lru_cache
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    _settings = Settings()
    logger.info(
        "Config loaded — env=%s debug=%s", _settings.environment, _settings.debug
    )
    return _settings


settings = get_settings()
