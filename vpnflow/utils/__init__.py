"""Utility modules."""

from .config import AppConfig, ConfigError, load_config
from .credentials import Credentials, CredentialsError, get_credentials

__all__ = [
    "AppConfig",
    "ConfigError",
    "load_config",
    "Credentials",
    "CredentialsError",
    "get_credentials",
]
