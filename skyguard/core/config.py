"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from skyguard.core.config import settings
    print(settings.DATABASE_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class MonitoredLocation(BaseModel):
    """A named coordinate the weather monitor polls each cycle."""
    name: str
    lat: float
    lon: float


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "SkyGuard Alert Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Database ──
    DATABASE_URL: str = "sqlite+aiosqlite:///./skyguard.db"
    DATABASE_POOL_SIZE: int = 20  # ignored for SQLite
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Alert composition ──
    TITLE_MAX_LENGTH: int = 100
    MESSAGE_MAX_LENGTH: int = 1000
    EMERGENCY_ALERTS_ALWAYS_ON: bool = False

    # ── Rate limiting (per sender) ──
    RATE_LIMIT_MAX_SENDS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0

    # ── Weather monitoring ──
    OPENWEATHERMAP_API_KEY: Optional[str] = None
    OPENWEATHERMAP_BASE_URL: str = "https://api.openweathermap.org"
    WEATHER_FETCH_TIMEOUT: float = 10.0  # seconds, per request
    WEATHER_COOLDOWN_MINUTES: int = 60
    AQI_ALERT_THRESHOLD: int = 4  # OpenWeatherMap 1–5 scale, 4 = "Poor"
    MONITORED_LOCATIONS: List[MonitoredLocation] = [
        MonitoredLocation(name="New York", lat=40.7128, lon=-74.0060),
        MonitoredLocation(name="Los Angeles", lat=34.0522, lon=-118.2437),
        MonitoredLocation(name="Chicago", lat=41.8781, lon=-87.6298),
    ]

    # ── Audit ──
    AUDIT_LOG_MAX_ENTRIES: int = 100  # 0 = unbounded

    # ── Delivery channels ──
    SMS_PROVIDER: str = "simulation"  # see sms_gateway.SUPPORTED_PROVIDERS
    VAPID_PRIVATE_KEY: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
