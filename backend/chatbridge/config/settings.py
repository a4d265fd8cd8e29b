import logging
from dataclasses import dataclass, field
from functools import lru_cache
from os import getenv
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

_PERMISSION_MODES = {"deny", "readonly", "allow"}
_DEFAULT_HOME = Path.home() / ".chatbridge"


class ConfigurationError(RuntimeError):
    """Raised when a channel or the bridge cannot start with the given settings."""


@dataclass
class Settings:
    app_name: str = "chatbridge"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    opencode_url: str = "http://127.0.0.1:4096"
    opencode_directory: str | None = None
    opencode_username: str | None = None
    opencode_password: str | None = None
    opencode_timeout_seconds: float = 120.0

    db_path: str = str(_DEFAULT_HOME / "chatbridge.db")

    telegram_enabled: bool = True
    telegram_token: str | None = None

    whatsapp_enabled: bool = False
    whatsapp_auth_dir: str = str(_DEFAULT_HOME / "whatsapp")
    whatsapp_transport: str | None = None

    groups_enabled: bool = False
    tool_updates_enabled: bool = False
    tool_output_limit: int = 1200
    permission_mode: Literal["deny", "readonly", "allow"] = "deny"
    pairing_code: str | None = None
    allowlist: dict[str, list[str]] = field(
        default_factory=lambda: {"telegram": [], "whatsapp": []}
    )

    health_port: int | None = None
    health_interval_seconds: float = 30.0


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _as_port(value: str | None) -> int | None:
    if not value or not value.strip():
        return None
    try:
        port = int(value)
    except ValueError as exc:
        raise ConfigurationError(f"HEALTH_PORT must be an integer, got {value!r}") from exc
    return port if port > 0 else None


def _as_int(name: str, default: int) -> int:
    value = getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _as_float(name: str, default: float) -> float:
    value = getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    permission_mode = getenv("PERMISSION_MODE", "deny").strip().lower()
    if permission_mode not in _PERMISSION_MODES:
        raise ConfigurationError(
            f"PERMISSION_MODE must be one of {sorted(_PERMISSION_MODES)}, got {permission_mode!r}"
        )

    telegram_token = getenv("TELEGRAM_BOT_TOKEN", "").strip() or None
    telegram_enabled = _as_bool(getenv("TELEGRAM_ENABLED"), telegram_token is not None)
    if telegram_enabled and not telegram_token:
        logger.warning("TELEGRAM_ENABLED is set but TELEGRAM_BOT_TOKEN is empty")

    home = Path(getenv("CHATBRIDGE_HOME", str(_DEFAULT_HOME))).expanduser()

    return Settings(
        app_name=getenv("APP_NAME", "chatbridge"),
        app_version=getenv("APP_VERSION", "0.1.0"),
        log_level=getenv("LOG_LEVEL", "INFO").upper(),
        opencode_url=getenv("OPENCODE_URL", "http://127.0.0.1:4096").rstrip("/"),
        opencode_directory=getenv("OPENCODE_DIRECTORY") or None,
        opencode_username=getenv("OPENCODE_USERNAME") or None,
        opencode_password=getenv("OPENCODE_PASSWORD") or None,
        opencode_timeout_seconds=_as_float("OPENCODE_TIMEOUT_SECONDS", 120.0),
        db_path=getenv("CHATBRIDGE_DB_PATH", str(home / "chatbridge.db")),
        telegram_enabled=telegram_enabled,
        telegram_token=telegram_token,
        whatsapp_enabled=_as_bool(getenv("WHATSAPP_ENABLED"), False),
        whatsapp_auth_dir=getenv("WHATSAPP_AUTH_DIR", str(home / "whatsapp")),
        whatsapp_transport=getenv("WHATSAPP_TRANSPORT") or None,
        groups_enabled=_as_bool(getenv("GROUPS_ENABLED"), False),
        tool_updates_enabled=_as_bool(getenv("TOOL_UPDATES_ENABLED"), False),
        tool_output_limit=_as_int("TOOL_OUTPUT_LIMIT", 1200),
        permission_mode=permission_mode,
        pairing_code=getenv("PAIRING_CODE") or None,
        allowlist={
            "telegram": _as_list(getenv("ALLOW_FROM_TELEGRAM")),
            "whatsapp": _as_list(getenv("ALLOW_FROM_WHATSAPP")),
        },
        health_port=_as_port(getenv("HEALTH_PORT")),
        health_interval_seconds=_as_float("HEALTH_INTERVAL_SECONDS", 30.0),
    )
