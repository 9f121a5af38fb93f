"""
CONFIG.PY: SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read environment variables for the
pipeline. Required keys must exist; if any is missing or invalid the process
fails early with ``ConfigError``. Tunables carry documented defaults.

Config is loaded once on first use and cached in a single in-memory Config
object. No dynamic reload. To use a config value, import:

    from protection_billing.config import get_config

Do not access os.getenv directly from any other module.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv


# Determine project root correctly (directory containing the top-level package)
PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Load variables from .env if it exists; OS env overrides these automatically
load_dotenv(PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

REQUIRED_ENV_KEYS = [
    "DATABASE_URL",
    "STRIPE_SECRET_KEY",
]

OPTIONAL_ENV_DEFAULTS = {
    "RUN_ENV": "dev",
    "JSON_LOG_FILE": "",
    "ALEMBIC_CONFIG": "alembic.ini",
    "SHOPIFY_API_VERSION": "2024-01",
    "FX_API_BASE_URL": "https://api.exchangerate-api.com/v4/latest",
    "FX_CACHE_TTL_SECONDS": "86400",
    "HTTP_TIMEOUT_SECONDS": "30",
    "SYNC_DAYS_BACK": "2",
    "SYNC_MODE": "sequential",
    "SYNC_CONCURRENCY": "5",
    "SYNC_STORE_DELAY_SECONDS": "0.5",
    "DEFAULT_PROTECTION_HANDLE": "shipping-protection",
    "STRIPE_WEBHOOK_SECRET": "",
}

SYNC_MODES = {"sequential", "concurrent"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _require_env(env: Mapping[str, str], key: str) -> str:
    value = env.get(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _optional_env(env: Mapping[str, str], key: str) -> str:
    value = env.get(key)
    if value is None or not value.strip():
        return OPTIONAL_ENV_DEFAULTS[key]
    return value.strip()


def _parse_int(value: str, *, key: str, minimum: int = 0) -> int:
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed < minimum:
        message = f"Config key {key} must be >= {minimum}; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_seconds(value: str, *, key: str) -> float:
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        message = f"Config key {key} must be a number of seconds; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed < 0:
        message = f"Config key {key} cannot be negative; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return float(parsed)


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped:
        message = f"Config key {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _parse_sync_mode(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in SYNC_MODES:
        message = f"Config key SYNC_MODE must be one of {sorted(SYNC_MODES)}; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return normalized


@dataclass(slots=True, frozen=True)
class Config:
    run_env: str
    database_url: str
    alembic_config: str
    json_log_file: str

    stripe_secret_key: str
    stripe_webhook_secret: str

    shopify_api_version: str
    fx_api_base_url: str
    fx_cache_ttl_seconds: int
    http_timeout_seconds: float

    sync_days_back: int
    sync_mode: str
    sync_concurrency: int
    sync_store_delay_seconds: float
    default_protection_handle: str

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Config:
        source = os.environ if env is None else env
        required = {key: _require_env(source, key) for key in REQUIRED_ENV_KEYS}
        optional = {key: _optional_env(source, key) for key in OPTIONAL_ENV_DEFAULTS}

        return cls(
            run_env=optional["RUN_ENV"],
            database_url=required["DATABASE_URL"],
            alembic_config=optional["ALEMBIC_CONFIG"],
            json_log_file=optional["JSON_LOG_FILE"],
            stripe_secret_key=required["STRIPE_SECRET_KEY"],
            stripe_webhook_secret=optional["STRIPE_WEBHOOK_SECRET"],
            shopify_api_version=optional["SHOPIFY_API_VERSION"],
            fx_api_base_url=_clean_url(optional["FX_API_BASE_URL"], key="FX_API_BASE_URL"),
            fx_cache_ttl_seconds=_parse_int(
                optional["FX_CACHE_TTL_SECONDS"], key="FX_CACHE_TTL_SECONDS"
            ),
            http_timeout_seconds=_parse_seconds(
                optional["HTTP_TIMEOUT_SECONDS"], key="HTTP_TIMEOUT_SECONDS"
            ),
            sync_days_back=_parse_int(optional["SYNC_DAYS_BACK"], key="SYNC_DAYS_BACK", minimum=1),
            sync_mode=_parse_sync_mode(optional["SYNC_MODE"]),
            sync_concurrency=_parse_int(
                optional["SYNC_CONCURRENCY"], key="SYNC_CONCURRENCY", minimum=1
            ),
            sync_store_delay_seconds=_parse_seconds(
                optional["SYNC_STORE_DELAY_SECONDS"], key="SYNC_STORE_DELAY_SECONDS"
            ),
            default_protection_handle=optional["DEFAULT_PROTECTION_HANDLE"],
        )

    @property
    def webhook_verification_enabled(self) -> bool:
        return bool(self.stripe_webhook_secret)


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
