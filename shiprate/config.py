from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, Dict
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./shiprate.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "ShipRate Quote & Booking Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Redis Cache Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    CACHE_NAMESPACE: str = "shiprate"
    CATALOG_CACHE_TTL: int = 300  # 5 minutes for services, cards and policies

    # Quote Engine
    QUOTE_SESSION_TTL_MINUTES: int = 30  # Absolute expiry from creation
    PROVIDER_TIMEOUT_SECONDS: Dict[str, float] = {
        "velocity": 35.0,
        "delhivery": 20.0,
        "ekart": 35.0,
    }
    DEFAULT_PROVIDER_TIMEOUT_SECONDS: float = 20.0
    SERVICEABILITY_TIMEOUT_SECONDS: Dict[str, float] = {
        "velocity": 0.0,  # 0 = skip the lane check
        "delhivery": 2.5,
        "ekart": 2.5,
    }
    FALLBACK_MIN_AMOUNT: float = 50.0  # Flat fallback floor when no card exists
    FALLBACK_PER_KG: float = 20.0
    DEFAULT_SELL_MARKUP_PERCENT: float = 10.0  # Sell = cost * 1.10 without a sell card
    VOLUMETRIC_DIVISOR: int = 5000
    DEFAULT_TAX_RATE_PERCENT: float = 18.0  # GST

    # Ranking
    RANK_PRICE_WEIGHT: float = 0.6
    RANK_SPEED_WEIGHT: float = 0.4

    # Booking
    BOOKING_PROVIDER_TIMEOUT_SECONDS: float = 45.0
    BOOKING_MAX_ATTEMPTS: int = 3  # Selected option plus next-ranked fallbacks
    PERSISTENCE_MAX_RETRIES: int = 3  # Optimistic lock retries

    # Reconciliation
    VARIANCE_THRESHOLD_PERCENT: float = 5.0
    BILLING_PROVIDERS: list[str] = ["velocity", "delhivery", "ekart"]

    # Courier adapter circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5  # Consecutive failures before opening
    CIRCUIT_COOLDOWN_SECONDS: float = 60.0

    # Shiprocket gateway (routes velocity/delhivery/ekart bookings)
    SHIPROCKET_EMAIL: str = ""  # Shiprocket account email
    SHIPROCKET_PASSWORD: str = ""  # Shiprocket account password
    SHIPROCKET_API_URL: str = "https://apiv2.shiprocket.in/v1/external"
    SHIPROCKET_DEFAULT_PICKUP_LOCATION: str = ""  # Default pickup location name
    SHIPROCKET_COURIER_NAMES: Dict[str, str] = {
        "velocity": "Velocity",
        "delhivery": "Delhivery",
        "ekart": "Ekart",
    }

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    QUOTE_SESSION_RETENTION_HOURS: int = 24  # Keep expired sessions this long
    QUOTE_PURGE_INTERVAL_MINUTES: int = 15

    @field_validator('CORS_ORIGINS', 'BILLING_PROVIDERS', mode='before')
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',')]
        return v

    @field_validator(
        'PROVIDER_TIMEOUT_SECONDS',
        'SERVICEABILITY_TIMEOUT_SECONDS',
        'SHIPROCKET_COURIER_NAMES',
        mode='before'
    )
    @classmethod
    def parse_mapping(cls, v):
        if isinstance(v, str):
            return json.loads(v)
        return v

    def provider_timeout(self, provider: str) -> float:
        return self.PROVIDER_TIMEOUT_SECONDS.get(provider, self.DEFAULT_PROVIDER_TIMEOUT_SECONDS)

    def serviceability_timeout(self, provider: str) -> float:
        return self.SERVICEABILITY_TIMEOUT_SECONDS.get(provider, 0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
