"""
Engine configuration.

Environment isolation follows the APP_ENV prefix scheme:
    - PROD: PROD_REDIS_URL, PROD_DATABASE_URL
    - STAGE: STAGE_REDIS_URL, STAGE_DATABASE_URL
    - LOCAL: LOCAL_REDIS_URL, LOCAL_DATABASE_URL

Secrets (connection URLs) are read through env() and never logged.
Tunables use plain REFERRAL_* variables shared by all environments.
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

VALID_ENVIRONMENTS = ("prod", "stage", "local")

# Sweep interval bounds (seconds)
MIN_SWEEP_INTERVAL_SECONDS = 10
MAX_SWEEP_INTERVAL_SECONDS = 3600


def app_env() -> str:
    value = os.getenv("APP_ENV", "prod").lower()
    if value not in VALID_ENVIRONMENTS:
        raise ValueError(f"Invalid APP_ENV={value}. Must be one of: {', '.join(VALID_ENVIRONMENTS)}")
    return value


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Example:
        env("REDIS_URL") -> value of STAGE_REDIS_URL when APP_ENV=stage
    """
    return os.getenv(f"{app_env().upper()}_{key}", default)


def _parse_bool_env(key: str, default: bool = True) -> bool:
    value = os.getenv(key, "").lower().strip()
    if value in ("true", "1", "yes", "on"):
        return True
    elif value in ("false", "0", "no", "off"):
        return False
    else:
        return default


def _parse_int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got: {raw}")


def _parse_float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got: {raw}")


def log_level() -> int:
    name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"Invalid LOG_LEVEL={name}")
    return level


def background_workers_enabled() -> bool:
    """Kill switch read live on every worker iteration."""
    return _parse_bool_env("FEATURE_BACKGROUND_WORKERS_ENABLED", default=True)


@dataclass(frozen=True)
class EngineSettings:
    """
    Immutable engine settings.

    All values are read once at startup; the settings object is shared by
    the state machine, the lock providers and the background workers.
    """
    app_env: str
    redis_url: str
    database_url: str
    lock_wait_timeout_seconds: float
    lock_ttl_seconds: int
    sweep_batch_size: int
    sweep_max_run_seconds: float
    sweep_interval_seconds: int
    uncompletable_grace_days: int
    background_workers_enabled: bool

    def __post_init__(self):
        if self.lock_wait_timeout_seconds <= 0:
            raise ValueError("lock_wait_timeout_seconds must be greater than zero")
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be greater than zero")
        if self.sweep_batch_size <= 0:
            raise ValueError("sweep_batch_size must be greater than zero")
        if self.sweep_max_run_seconds <= 0:
            raise ValueError("sweep_max_run_seconds must be greater than zero")
        if self.uncompletable_grace_days < 0:
            raise ValueError("uncompletable_grace_days must not be negative")

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def database_enabled(self) -> bool:
        return bool(self.database_url)


_settings: Optional[EngineSettings] = None


def load_settings() -> EngineSettings:
    """Build settings from the current environment (no caching)."""
    interval = _parse_int_env("REFERRAL_SWEEP_INTERVAL_SECONDS", 60)
    interval = max(MIN_SWEEP_INTERVAL_SECONDS, min(MAX_SWEEP_INTERVAL_SECONDS, interval))

    return EngineSettings(
        app_env=app_env(),
        redis_url=env("REDIS_URL"),
        database_url=env("DATABASE_URL"),
        lock_wait_timeout_seconds=_parse_float_env("REFERRAL_LOCK_WAIT_TIMEOUT_SECONDS", 5.0),
        lock_ttl_seconds=_parse_int_env("REFERRAL_LOCK_TTL_SECONDS", 60),
        sweep_batch_size=_parse_int_env("REFERRAL_SWEEP_BATCH_SIZE", 100),
        sweep_max_run_seconds=_parse_float_env("REFERRAL_SWEEP_MAX_RUN_SECONDS", 15.0),
        sweep_interval_seconds=interval,
        uncompletable_grace_days=_parse_int_env("REFERRAL_UNCOMPLETABLE_GRACE_DAYS", 14),
        background_workers_enabled=_parse_bool_env("FEATURE_BACKGROUND_WORKERS_ENABLED", default=True),
    )


def get_settings() -> EngineSettings:
    """Get global engine settings (singleton)."""
    global _settings

    if _settings is None:
        _settings = load_settings()
        logger.info(
            f"[CONFIG] Settings loaded for environment {_settings.app_env.upper()}: "
            f"redis={'on' if _settings.redis_enabled else 'off'}, "
            f"database={'on' if _settings.database_enabled else 'off'}, "
            f"sweep_batch_size={_settings.sweep_batch_size}, "
            f"sweep_interval={_settings.sweep_interval_seconds}s, "
            f"background_workers={_settings.background_workers_enabled}"
        )

    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests and reconfiguration)."""
    global _settings
    _settings = None
