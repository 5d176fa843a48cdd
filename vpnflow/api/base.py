"""Contract of the server API as seen by the connection flow."""

from enum import Flag, auto
from typing import Protocol

from .models import Profile, ServerInfo, ServerTarget, TunnelConfiguration


class ApiOptions(Flag):
    """Options for profile and tunnel configuration requests."""

    NONE = 0
    # Force a fresh authorization instead of reusing a stored token
    IGNORE_STORED_AUTH_STATE = auto()
    # Force fresh key material instead of reusing a stored key pair
    IGNORE_STORED_KEY_PAIR = auto()


class Authorizer(Protocol):
    """Interactive authorization collaborator.

    May show a browser or a prompt; raises AuthorizationCancelled when
    the user backs out.
    """

    async def authorize(self, target: ServerTarget, server_info: ServerInfo) -> str:
        """Return an access token for the target."""
        ...


class ServerAPI(Protocol):
    """Operations the connection flow needs from a server."""

    async def get_server_info(self, target: ServerTarget) -> ServerInfo:
        ...

    async def get_available_profiles(
        self,
        target: ServerTarget,
        server_info: ServerInfo,
        authorizer: Authorizer | None,
        options: ApiOptions = ApiOptions.NONE,
    ) -> list[Profile]:
        ...

    async def get_tunnel_configuration(
        self,
        target: ServerTarget,
        server_info: ServerInfo,
        profile: Profile,
        authorizer: Authorizer | None,
        options: ApiOptions = ApiOptions.NONE,
    ) -> TunnelConfiguration:
        ...

    async def report_disconnect(
        self,
        api_version: str,
        base_url: str,
        profile: Profile,
        fire_and_forget: bool,
    ) -> None:
        ...

    def cancel_get_server_info(self) -> None:
        ...
