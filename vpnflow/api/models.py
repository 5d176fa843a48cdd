"""Pydantic models for server API data and connectable targets."""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class PasswordStrategy(str, Enum):
    """How the password of a static config is obtained at connect time."""

    SAVED = "saved"
    ASK_EVERY_TIME = "ask_every_time"


class StaticCredentials(BaseModel):
    """Credentials embedded in a static tunnel configuration."""

    model_config = ConfigDict(frozen=True)

    username: str
    password_strategy: PasswordStrategy = PasswordStrategy.SAVED
    password: SecretStr | None = None


class ServerTarget(BaseModel):
    """A VPN server reachable through its API."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["server"] = "server"
    api_base_url: str
    auth_base_url: str
    org_id: str | None = None

    @property
    def local_storage_path(self) -> str:
        """Directory name of this target's local storage."""
        return _storage_name(self.api_base_url)


class StaticConfigTarget(BaseModel):
    """A pre-supplied OpenVPN configuration file."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["static_config"] = "static_config"
    name: str
    config_path: Path
    credentials: StaticCredentials | None = None

    @property
    def local_storage_path(self) -> str:
        return _storage_name(f"config-{self.name}")


ConnectableTarget = Annotated[
    Union[ServerTarget, StaticConfigTarget],
    Field(discriminator="kind"),
]


def _storage_name(value: str) -> str:
    """Turn an URL or name into a filesystem-safe directory name."""
    value = value.split("://", 1)[-1].rstrip("/")
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in value)


class Profile(BaseModel):
    """A named configuration variant offered by a server."""

    model_config = ConfigDict(frozen=True)

    profile_id: str
    display_name: dict[str, str] | str
    vpn_protocols: tuple[str, ...] = ()
    default_gateway: bool = True

    def name(self, locale: str = "en") -> str:
        """Display name for a locale, falling back to any available one."""
        if isinstance(self.display_name, str):
            return self.display_name
        if locale in self.display_name:
            return self.display_name[locale]
        for key, value in self.display_name.items():
            if key.split("-")[0] == locale.split("-")[0]:
                return value
        return next(iter(self.display_name.values()), self.profile_id)


class ServerInfo(BaseModel):
    """Endpoints discovered for a server."""

    model_config = ConfigDict(frozen=True)

    api_base_url: str
    api_version: str = "3"
    authorization_endpoint: str
    token_endpoint: str


class OpenVPNConfig(BaseModel):
    """OpenVPN tunnel configuration as a list of lines."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["openvpn"] = "openvpn"
    lines: tuple[str, ...]

    @property
    def text(self) -> str:
        return "\n".join(self.lines) + "\n"


class WireGuardConfig(BaseModel):
    """WireGuard tunnel configuration (wg-quick format)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["wireguard"] = "wireguard"
    text: str


VPNConfig = Annotated[
    Union[OpenVPNConfig, WireGuardConfig],
    Field(discriminator="kind"),
]


class TunnelConfiguration(BaseModel):
    """A signed tunnel configuration issued by a server."""

    model_config = ConfigDict(frozen=True)

    vpn_config: VPNConfig
    expires_at: datetime
    authenticated_at: datetime | None = None
    server_api_base_url: str
    server_api_version: str = "3"
