"""
Core Configuration Management
PaperTrade Platform

Environment-based settings for the signal execution pipeline, market data
cache, persistence and API server.
"""

from datetime import time
from decimal import Decimal
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_clock_time(value: str) -> time:
    """Parse an "HH:MM" string into a time object."""
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except ValueError:
        raise ValueError(f"Expected HH:MM, got {value!r}") from None


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="user", description="Database user")
    password: str = Field(default="password", description="Database password")
    name: str = Field(default="papertrade", description="Database name")

    # Connection pool settings
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    pool_recycle: int = Field(default=1800, description="Recycle connections after seconds")

    @property
    def async_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[str] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    socket_timeout: float = Field(default=5.0, description="Socket timeout")
    key_prefix: str = Field(default="papertrade:", description="Prefix for every key")

    @property
    def url(self) -> str:
        """Redis URL."""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class TradingSettings(BaseSettings):
    """Execution simulator and admission control settings."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    # Execution
    execution_mode: Literal["PAPER", "LIVE"] = Field(default="PAPER", description="Order executor mode")
    slippage_percent: Decimal = Field(default=Decimal("0.1"), description="Adverse slippage applied in paper mode (%)")
    execution_delay_ms: int = Field(default=500, description="Simulated execution latency in paper mode")
    exchange: Literal["NSE", "BSE"] = Field(default="NSE", description="Exchange used for charges")
    segment: Literal["DELIVERY", "INTRADAY"] = Field(default="DELIVERY", description="Segment used for charges")

    # Market hours (exchange local time)
    timezone: str = Field(default="Asia/Kolkata", description="Exchange timezone")
    market_open_time: str = Field(default="09:15", description="Market open time")
    market_close_time: str = Field(default="15:30", description="Market close time")

    # Defaults
    default_reference_price: Decimal = Field(default=Decimal("100"), description="Seed price for untracked instruments")
    initial_balance: Decimal = Field(default=Decimal("100000"), description="Virtual balance for new accounts")

    @field_validator("market_open_time", "market_close_time")
    @classmethod
    def check_clock_time(cls, value: str) -> str:
        parse_clock_time(value)
        return value

    @property
    def market_open(self) -> time:
        return parse_clock_time(self.market_open_time)

    @property
    def market_close(self) -> time:
        return parse_clock_time(self.market_close_time)


class SignalSettings(BaseSettings):
    """Signal engine settings."""

    model_config = SettingsConfigDict(env_prefix="SIGNAL_")

    dedup_window_seconds: int = Field(default=60, description="Idempotency window for repeated signals")
    dedup_backend: Literal["memory", "redis"] = Field(default="memory", description="Where dedup keys are kept")
    metrics_log_limit: int = Field(default=100, description="Audit events scanned for strategy metrics")


class MarketDataSettings(BaseSettings):
    """Price cache, simulated feed and broadcast settings."""

    model_config = SettingsConfigDict(env_prefix="MARKET_")

    simulated_feed_enabled: bool = Field(default=True, description="Run the random-walk price feed")
    feed_interval_seconds: float = Field(default=2.0, description="Simulated tick interval")
    broadcast_interval_seconds: float = Field(default=2.0, description="Price broadcast interval")
    subscriber_queue_size: int = Field(default=100, description="Bounded queue size per subscriber")
    volatility: float = Field(default=0.002, description="Random walk volatility per tick")
    mean_reversion: float = Field(default=0.05, description="Pull back towards the base price")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        description="Log format"
    )

    # File logging
    file_enabled: bool = Field(default=True, description="Enable file logging")
    file_path: str = Field(default="logs/papertrade.json", description="Structured log file path")
    error_file_path: str = Field(default="logs/error.log", description="Error log file path")
    file_rotation: str = Field(default="10 MB", description="Log rotation size")
    file_retention: str = Field(default="30 days", description="Log retention period")


class APISettings(BaseSettings):
    """API server settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(default="0.0.0.0", description="API host")
    port: int = Field(default=8000, description="API port")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost"],
        description="Allowed CORS origins"
    )


class Settings(BaseSettings):
    """
    Main application settings.

    Aggregates all sub-settings and provides environment-based configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    PROJECT_NAME: str = Field(default="PaperTrade", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Environment"
    )
    DEBUG: bool = Field(default=True, description="Debug mode")

    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Database URL; built from the DB_* settings when unset"
    )
    REDIS_URL: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    STORAGE_BACKEND: Literal["memory", "database"] = Field(
        default="database",
        description="Store implementation used by the service container"
    )
    AUDIT_DIR: str = Field(default="logs/audit", description="Directory for JSONL audit files")

    @property
    def db(self) -> DatabaseSettings:
        """Get database settings."""
        return DatabaseSettings()

    @property
    def redis(self) -> RedisSettings:
        """Get Redis settings."""
        return RedisSettings()

    @property
    def trading(self) -> TradingSettings:
        """Get trading settings."""
        return TradingSettings()

    @property
    def signals(self) -> SignalSettings:
        """Get signal engine settings."""
        return SignalSettings()

    @property
    def market_data(self) -> MarketDataSettings:
        """Get market data settings."""
        return MarketDataSettings()

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings()

    @property
    def api(self) -> APISettings:
        """Get API settings."""
        return APISettings()

@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()


def reload_settings() -> Settings:
    """Reload settings from environment."""
    get_settings.cache_clear()
    return get_settings()
