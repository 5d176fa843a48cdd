"""User name and password for static tunnel configurations."""

import os
from dataclasses import dataclass

from .config import load_env

USER_VAR = "VPNFLOW_USER"
PASSWORD_VAR = "VPNFLOW_PASS"


@dataclass(frozen=True)
class Credentials:
    """User name and password passed to the tunnel."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


class CredentialsError(Exception):
    """Error loading credentials."""

    pass


def get_credentials(username: str | None = None) -> Credentials:
    """Load static config credentials from the environment or a .env file.

    Args:
        username: User name to use instead of VPNFLOW_USER

    Raises:
        CredentialsError: If the user name or VPNFLOW_PASS is missing
    """
    load_env()
    username = username or os.getenv(USER_VAR)
    password = os.getenv(PASSWORD_VAR)

    missing = [name for name, value in ((USER_VAR, username), (PASSWORD_VAR, password)) if not value]
    if missing:
        raise CredentialsError(
            f"Credentials not configured: {' and '.join(missing)} not set.\n"
            "Set them in the environment or a .env file, or use --ask-password."
        )
    return Credentials(username=username, password=password)


def credentials_configured(username: str | None = None) -> bool:
    """Check whether get_credentials() would succeed."""
    try:
        get_credentials(username)
    except CredentialsError:
        return False
    return True
