"""
Vault Indexer - Configuration

Single source of truth for indexer and API configuration. Values come from
environment variables with fallback to an env file.

Required:
  DATABASE_URL          - Postgres connection string
  VAULT_PACKAGE_ID      - Ledger package that emits the vault events

Environment control:
  ENVIRONMENT           - dev | staging | prod (prod switches to JSON logs)
  LOG_LEVEL             - DEBUG | INFO | WARNING | ERROR (default: INFO)
  ENV_FILE              - env file to read (default: .env)

Usage:
    from vault_indexer.config import get_settings

    settings = get_settings()
    print(settings.event_type_key("DepositMade"))
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SERVICE_NAME = "vault-indexer"

# Keys whose values are DSNs/URLs and must not carry stray whitespace
_URL_KEYS = {"DATABASE_URL", "database_url", "SUI_RPC_URL", "sui_rpc_url"}


class Settings(BaseSettings):
    """
    Settings shared by the indexer process and the read API.

    Set ENV_FILE to point at a different env file (.env.prod, .env.test).
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # STORAGE
    # =========================================================================

    DATABASE_URL: str = Field(..., description="Postgres connection string")
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=1, description="Minimum pooled connections")
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1, description="Maximum pooled connections")
    DB_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=30.0, gt=0, description="Seconds to wait for a pooled connection"
    )

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev", description="Deployment environment"
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )

    # =========================================================================
    # LEDGER SOURCE
    # =========================================================================

    SUI_RPC_URL: str = Field(
        default="https://fullnode.testnet.sui.io:443",
        description="Sui full node JSON-RPC endpoint",
    )
    VAULT_PACKAGE_ID: str = Field(..., description="Package id that emits vault events")
    VAULT_MODULE_NAME: str = Field(default="bucky_bank", description="Module that emits events")
    RPC_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0, description="Per-request timeout")
    RPC_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Transport attempts per page")

    # =========================================================================
    # POLLING
    # =========================================================================

    POLL_PAGE_SIZE: int = Field(default=50, ge=1, le=1000, description="Events per page")
    BUSY_DELAY_SECONDS: float = Field(
        default=1.0, ge=0, description="Delay after a cycle that applied events"
    )
    IDLE_DELAY_SECONDS: float = Field(
        default=5.0, ge=0, description="Delay after an idle or failed cycle"
    )
    DEAD_LETTER_REPLAY_BATCH: int = Field(
        default=100, ge=0, description="Dead letters retried per drained cycle"
    )
    DEAD_LETTER_MAX_ATTEMPTS: int = Field(
        default=5, ge=1, description="Replay attempts before a dead letter is parked"
    )
    SHUTDOWN_GRACE_SECONDS: float = Field(
        default=5.0, ge=0, description="Time an in-flight cycle may finish after shutdown"
    )

    # =========================================================================
    # SERVER CONFIGURATION
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Read API host")
    PORT: int = Field(default=3001, description="Read API port")
    HEALTH_HOST: str = Field(default="0.0.0.0", description="Indexer probe host")
    HEALTH_PORT: int = Field(default=8080, ge=0, description="Indexer probe port (0 disables)")
    CORS_ORIGINS: str | None = Field(default=None, description="Comma-separated CORS origins")

    # =========================================================================
    # VALIDATION & NORMALIZATION
    # =========================================================================

    @model_validator(mode="before")
    @classmethod
    def _normalize_values(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Strip whitespace/quotes and normalize ENVIRONMENT aliases."""
        for key, value in list(values.items()):
            if isinstance(value, str):
                cleaned = value.strip().strip('"').strip("'").strip()
                if key in _URL_KEYS:
                    cleaned = cleaned.replace("\n", "").replace("\r", "").replace("\t", "")
                values[key] = cleaned

        env_key = next((k for k in ("ENVIRONMENT", "environment") if k in values), None)
        if env_key:
            raw = str(values[env_key]).lower()
            if raw == "production":
                raw = "prod"
            elif raw == "development":
                raw = "dev"
            elif raw not in ("dev", "staging", "prod"):
                raise ValueError(
                    f"ENVIRONMENT='{raw}' is invalid. Must be one of: dev, staging, prod"
                )
            values[env_key] = raw

        level_key = next((k for k in ("LOG_LEVEL", "log_level") if k in values), None)
        if level_key and isinstance(values[level_key], str):
            values[level_key] = values[level_key].upper()

        return values

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> "Settings":
        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "prod"

    @property
    def cors_allowed_origins(self) -> list[str]:
        """Parse CORS_ORIGINS into a list; unset means any origin."""
        if self.CORS_ORIGINS:
            origins = [
                o.strip().rstrip("/") for o in self.CORS_ORIGINS.replace(",", " ").split()
            ]
            origins = [o for o in origins if o]
            if origins:
                return origins
        return ["*"]


# =========================================================================
# SINGLETON & FACTORY
# =========================================================================


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()  # type: ignore[call-arg]


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()


# =========================================================================
# LOGGING CONFIGURATION
# =========================================================================


def configure_logging(settings: Settings | None = None, service_name: str = SERVICE_NAME) -> None:
    """
    Configure application logging based on settings.

    In production, uses structured JSON logging for observability.
    In development, uses colored console output.
    """
    from .core.logging import configure_structured_logging

    if settings is None:
        settings = get_settings()

    configure_structured_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.is_production,
        service_name=service_name,
    )

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)


def log_startup_diagnostics(service_name: str, settings: Settings | None = None) -> None:
    """Log a safe startup banner (never prints the DSN)."""
    cfg = settings or get_settings()
    logger.info("=" * 60)
    logger.info(f"SERVICE STARTUP: {service_name}")
    logger.info("=" * 60)
    logger.info(f"  Environment     : {cfg.ENVIRONMENT}")
    logger.info(f"  DB URL Set      : {'yes' if cfg.DATABASE_URL else 'no'}")
    logger.info(f"  RPC URL         : {cfg.SUI_RPC_URL}")
    logger.info(f"  Event source    : {cfg.VAULT_PACKAGE_ID}::{cfg.VAULT_MODULE_NAME}")
    logger.info("=" * 60)
