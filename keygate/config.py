"""Gateway configuration helpers."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

import structlog
from dotenv import load_dotenv
from platformdirs import user_data_dir

APP_NAME = "KeyGate"

_ENV_DEV_VALUES = {"development", "dev", "local"}
_DEFAULT_ADMIN_PASSWORD = "changeme"

logger = structlog.get_logger(__name__)


def hash_admin_password(password: str) -> str:
    """Return the SHA-256 hex digest used as the admin password hash."""

    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the gateway process."""

    environment: str
    admin_password_hash: Optional[str]
    data_dir: Path
    claude_home: Path
    rate_limit: int = 100
    rate_window_ms: int = 60_000
    session_max_age: int = 24 * 60 * 60
    offline_engine: bool = False
    claude_cli_path: str = "claude"
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        return self.environment in _ENV_DEV_VALUES


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_bool_env(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes"}


def _resolve_password_hash() -> Optional[str]:
    explicit = os.getenv("ADMIN_PASSWORD_HASH")
    if explicit:
        return explicit.strip().lower()
    password = os.getenv("ADMIN_PASSWORD", _DEFAULT_ADMIN_PASSWORD)
    if not password:
        return None
    return hash_admin_password(password)


def _default_data_dir() -> Path:
    return Path(user_data_dir(APP_NAME, APP_NAME))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    load_dotenv()
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    data_dir_override = os.getenv("KEYGATE_DATA_DIR")
    claude_home_override = os.getenv("CLAUDE_HOME")

    settings = Settings(
        environment=environment,
        admin_password_hash=_resolve_password_hash(),
        data_dir=Path(data_dir_override).expanduser() if data_dir_override else _default_data_dir(),
        claude_home=Path(claude_home_override).expanduser() if claude_home_override else Path.home(),
        rate_limit=_get_int_env("KEYGATE_RATE_LIMIT", 100),
        rate_window_ms=_get_int_env("KEYGATE_RATE_WINDOW_MS", 60_000),
        session_max_age=_get_int_env("KEYGATE_SESSION_MAX_AGE", 24 * 60 * 60),
        offline_engine=_get_bool_env("KEYGATE_OFFLINE_ENGINE"),
        claude_cli_path=os.getenv("CLAUDE_CLI_PATH", "claude"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if not settings.is_development and not os.getenv("ADMIN_PASSWORD_HASH") and os.getenv(
        "ADMIN_PASSWORD", _DEFAULT_ADMIN_PASSWORD
    ) == _DEFAULT_ADMIN_PASSWORD:
        logger.warning("config.default_admin_password", environment=environment)
    return settings


__all__ = ["APP_NAME", "Settings", "get_settings", "hash_admin_password"]
