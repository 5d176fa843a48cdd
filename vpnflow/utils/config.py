"""Application configuration from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


class ConfigError(Exception):
    """Error loading configuration."""

    pass


@dataclass(frozen=True)
class AppConfig:
    """vpnflow settings."""

    data_dir: Path
    log_level: str = "INFO"
    http_timeout: float = 30.0
    access_token: str | None = None
    about_to_expire_minutes: int = 15
    external_session_minutes: int = 30
    expiry_tick_seconds: int = 30
    app_name: str = "vpnflow"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "logs" / "vpnflow.log"

    @property
    def preferences_file(self) -> Path:
        return self.data_dir / "preferences.json"

    @property
    def runtime_dir(self) -> Path:
        return self.data_dir / "run"


def _number(name: str, default: float, kind: type = int) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def load_env() -> None:
    """Load a .env file from the working directory into the environment.

    Variables already set in the environment win.
    """
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)


def load_config() -> AppConfig:
    """Load configuration from environment variables.

    Will load from .env file if present. Every setting has a default.

    Raises:
        ConfigError: If a numeric setting is invalid
    """
    load_env()

    data_dir = os.getenv("VPNFLOW_DATA_DIR")
    tick = _number("VPNFLOW_EXPIRY_TICK_SECONDS", 30)
    if tick > 60:
        raise ConfigError("VPNFLOW_EXPIRY_TICK_SECONDS must not exceed 60")

    return AppConfig(
        data_dir=Path(data_dir).expanduser() if data_dir else Path.home() / ".local" / "share" / "vpnflow",
        log_level=os.getenv("VPNFLOW_LOG_LEVEL", "INFO").upper(),
        http_timeout=_number("VPNFLOW_HTTP_TIMEOUT", 30.0, float),
        access_token=os.getenv("VPNFLOW_ACCESS_TOKEN") or None,
        about_to_expire_minutes=_number("VPNFLOW_ABOUT_TO_EXPIRE_MINUTES", 15),
        external_session_minutes=_number("VPNFLOW_EXTERNAL_SESSION_MINUTES", 30),
        expiry_tick_seconds=tick,
        app_name=os.getenv("VPNFLOW_APP_NAME", "vpnflow"),
    )
