import os

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "dashguard"
    db_password: str = "dashguard"
    db_name: str = "dashguard"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 60  # Overrides the "global" preset
    rate_limit_burst_multiplier: float = 1.5  # burst_max = ceil(max * multiplier)
    rate_limit_max_entries: int = 10000  # LRU bound for the in-memory store
    rate_limit_sweep_interval_seconds: int = 60
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis is unavailable
    )
    rate_limit_trust_forwarded_for: bool = True

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Abuse detection (repeated rate limit violations)
    abuse_violation_threshold: int = 10
    abuse_window_seconds: int = 3600
    abuse_lockout_seconds: int = 3600

    # Session security policy
    session_concurrent_limit: int = 3
    session_idle_timeout_seconds: int = 30 * 60
    impossible_travel_speed_kmh: float = 500.0
    impossible_travel_min_distance_km: float = 100.0
    new_location_min_distance_km: float = 100.0
    new_location_medium_distance_km: float = 1000.0

    # Geolocation lookup (IP -> coarse location)
    geolocation_enabled: bool = False
    geolocation_url: str = "http://ip-api.com/json/{ip}?fields=status,lat,lon,country,city"
    geolocation_timeout: float = 2.0
    geolocation_cache_ttl_seconds: int = 3600

    @field_validator(
        "rate_limit_requests_per_minute",
        "rate_limit_max_entries",
        "rate_limit_sweep_interval_seconds",
        "abuse_violation_threshold",
        "session_concurrent_limit",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate limit values are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("rate_limit_burst_multiplier")
    @classmethod
    def validate_burst_multiplier(cls, v: float) -> float:
        """Burst ceiling may never be below the steady-state max."""
        if v < 1.0:
            raise ValueError("rate_limit_burst_multiplier must be at least 1.0")
        return v

    @field_validator(
        "impossible_travel_speed_kmh",
        "geolocation_timeout",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @model_validator(mode="after")
    def validate_location_thresholds(self) -> "Settings":
        if self.new_location_medium_distance_km < self.new_location_min_distance_km:
            raise ValueError(
                "new_location_medium_distance_km must not be below new_location_min_distance_km"
            )
        return self

    model_config = SettingsConfigDict(
        env_file=os.getenv("DASHGUARD_ENV_FILE", ".env"),
        extra="ignore",
        populate_by_name=True,
    )


# Global settings instance
settings = Settings()
