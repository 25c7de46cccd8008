from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = BASE_DIR / "data" / "siteqa.db"

_TRUTHY = {"1", "true", "yes", "on"}
_RATE_LIMIT_BACKENDS = {"memory", "sqlite", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def env_flag(name: str, default: str = "0") -> bool:
    v = (os.getenv(name) or default).strip().lower()
    return v in _TRUTHY


def _clamped_int_env(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(maximum, value))


def _clamped_float_env(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    return max(minimum, min(maximum, value))


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    sqlite_timeout_sec: float = 30.0
    batch_workers: int = 1
    batch_max_instances: int = 200
    rate_limit_backend: str = "memory"
    rate_limit_max: int = 120
    rate_limit_window_sec: int = 60
    log_level: str = "INFO"


def load_settings() -> Settings:
    """
    Read SITEQA_* environment variables.
    Out-of-range numbers are clamped, unknown backends fall back to 'memory'.
    """
    backend = (os.getenv("SITEQA_RATE_LIMIT_BACKEND") or "memory").strip().lower()
    if backend not in _RATE_LIMIT_BACKENDS:
        backend = "memory"

    raw_db = (os.getenv("SITEQA_DB_PATH") or "").strip()
    db_path = Path(raw_db) if raw_db else DEFAULT_DB_PATH

    log_level = (os.getenv("SITEQA_LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        log_level = "INFO"

    return Settings(
        db_path=db_path,
        sqlite_timeout_sec=_clamped_float_env("SITEQA_SQLITE_TIMEOUT_SEC", 30.0, 1.0, 60.0),
        batch_workers=_clamped_int_env("SITEQA_BATCH_WORKERS", 1, 1, 16),
        batch_max_instances=_clamped_int_env("SITEQA_BATCH_MAX_INSTANCES", 200, 1, 1000),
        rate_limit_backend=backend,
        rate_limit_max=_clamped_int_env("SITEQA_RATE_LIMIT_MAX", 120, 1, 100000),
        rate_limit_window_sec=_clamped_int_env("SITEQA_RATE_LIMIT_WINDOW_SEC", 60, 1, 86400),
        log_level=log_level,
    )
