"""HTTP client for the VPN server API."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable

import httpx

from .base import ApiOptions, Authorizer
from .errors import (
    AuthorizationError,
    DisconnectReportError,
    ProfileConfigError,
    ProfileListError,
    RequestCancelled,
    ServerInfoError,
)
from .models import (
    OpenVPNConfig,
    Profile,
    ServerInfo,
    ServerTarget,
    TunnelConfiguration,
    WireGuardConfig,
)

logger = logging.getLogger(__name__)

# Returns (private_key, public_key); regenerate=True forces a new pair
KeyProvider = Callable[[bool], Awaitable[tuple[str, str]]]


@dataclass
class _StoredToken:
    access_token: str
    authenticated_at: datetime


class ServerAPIClient:
    """Client for a VPN server's user portal API (version 3)."""

    WELL_KNOWN_PATH = "/.well-known/vpn-user-portal"
    API_V3_KEY = "http://eduvpn.org/api#3"

    # Configs without an Expires header are assumed valid this long
    DEFAULT_VALIDITY = timedelta(days=1)

    def __init__(
        self,
        timeout: float = 30.0,
        key_provider: KeyProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        fallback_token: str | None = None,
    ):
        self.timeout = timeout
        # Used for disconnect reports when this process never authorized
        self.fallback_token = fallback_token
        self.key_provider = key_provider
        self._transport = transport
        self._tokens: dict[str, _StoredToken] = {}
        self._server_info_task: asyncio.Task | None = None
        self._server_info_cancel_requested = False
        self._background: set[asyncio.Task] = set()

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    async def get_server_info(self, target: ServerTarget) -> ServerInfo:
        """Discover the API endpoints of a server.

        The request runs in its own task so cancel_get_server_info() can
        abort it without cancelling the caller.
        """
        self._server_info_cancel_requested = False
        task = asyncio.ensure_future(self._fetch_server_info(target))
        self._server_info_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._server_info_cancel_requested:
                raise RequestCancelled(
                    f"Getting server info for {target.api_base_url} was cancelled"
                ) from None
            raise
        finally:
            self._server_info_task = None
            self._server_info_cancel_requested = False

    def cancel_get_server_info(self) -> None:
        """Abort an in-flight get_server_info() call, if any."""
        task = self._server_info_task
        if task is not None and not task.done():
            logger.info("Cancelling server info request")
            self._server_info_cancel_requested = True
            task.cancel()

    async def _fetch_server_info(self, target: ServerTarget) -> ServerInfo:
        url = target.api_base_url.rstrip("/") + self.WELL_KNOWN_PATH
        try:
            async with self._client() as client:
                response = await client.get(url)
                response.raise_for_status()
                document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ServerInfoError(f"Could not get server info from {url}: {e}") from e

        try:
            api = document["api"][self.API_V3_KEY]
            return ServerInfo(
                api_base_url=api["api_endpoint"],
                api_version="3",
                authorization_endpoint=api["authorization_endpoint"],
                token_endpoint=api["token_endpoint"],
            )
        except (KeyError, TypeError) as e:
            raise ServerInfoError(f"Server at {url} does not offer API v3") from e

    async def _token(
        self,
        target: ServerTarget,
        server_info: ServerInfo,
        authorizer: Authorizer | None,
        options: ApiOptions,
    ) -> _StoredToken:
        key = server_info.api_base_url
        if ApiOptions.IGNORE_STORED_AUTH_STATE in options:
            self._tokens.pop(key, None)
        stored = self._tokens.get(key)
        if stored is not None:
            return stored
        if authorizer is None:
            raise AuthorizationError(f"Not authorized for {target.api_base_url}")
        access_token = await authorizer.authorize(target, server_info)
        stored = _StoredToken(access_token, datetime.now(timezone.utc))
        self._tokens[key] = stored
        return stored

    async def get_available_profiles(
        self,
        target: ServerTarget,
        server_info: ServerInfo,
        authorizer: Authorizer | None,
        options: ApiOptions = ApiOptions.NONE,
    ) -> list[Profile]:
        """Get the profiles the server offers to this user."""
        token = await self._token(target, server_info, authorizer, options)
        url = f"{server_info.api_base_url.rstrip('/')}/info"
        try:
            async with self._client() as client:
                response = await client.get(url, headers=_bearer(token))
                response.raise_for_status()
                profile_list = response.json()["info"]["profile_list"]
            return [
                Profile(
                    profile_id=p["profile_id"],
                    display_name=p.get("display_name", p["profile_id"]),
                    vpn_protocols=tuple(p.get("vpn_proto_list", ())),
                    default_gateway=p.get("default_gateway", True),
                )
                for p in profile_list
            ]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise ProfileListError(f"Could not get profiles from {url}: {e}") from e

    async def get_tunnel_configuration(
        self,
        target: ServerTarget,
        server_info: ServerInfo,
        profile: Profile,
        authorizer: Authorizer | None,
        options: ApiOptions = ApiOptions.NONE,
    ) -> TunnelConfiguration:
        """Obtain a signed tunnel configuration for a profile."""
        token = await self._token(target, server_info, authorizer, options)
        form = {"profile_id": profile.profile_id}
        private_key = None
        if self.key_provider is not None and "wireguard" in profile.vpn_protocols:
            regenerate = ApiOptions.IGNORE_STORED_KEY_PAIR in options
            private_key, public_key = await self.key_provider(regenerate)
            form["public_key"] = public_key

        url = f"{server_info.api_base_url.rstrip('/')}/connect"
        try:
            async with self._client() as client:
                response = await client.post(url, data=form, headers=_bearer(token))
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProfileConfigError(
                f"Error fetching configuration for profile '{profile.profile_id}': {e}"
            ) from e

        content_type = response.headers.get("content-type", "")
        if "wireguard" in content_type:
            vpn_config = WireGuardConfig(text=_with_private_key(response.text, private_key))
        else:
            vpn_config = OpenVPNConfig(lines=tuple(response.text.splitlines()))

        return TunnelConfiguration(
            vpn_config=vpn_config,
            expires_at=self._expires_at(response),
            authenticated_at=token.authenticated_at,
            server_api_base_url=server_info.api_base_url,
            server_api_version=server_info.api_version,
        )

    def _expires_at(self, response: httpx.Response) -> datetime:
        header = response.headers.get("expires")
        if header:
            try:
                return parsedate_to_datetime(header)
            except (TypeError, ValueError):
                logger.warning("Ignoring unparsable Expires header: %s", header)
        return datetime.now(timezone.utc) + self.DEFAULT_VALIDITY

    async def report_disconnect(
        self,
        api_version: str,
        base_url: str,
        profile: Profile,
        fire_and_forget: bool,
    ) -> None:
        """Tell the server a tunnel configuration is no longer in use.

        In fire-and-forget mode the request runs in the background and
        its errors are only logged; aclose() waits for it.
        """
        token = self._tokens.get(base_url)
        if token is None and self.fallback_token:
            token = _StoredToken(self.fallback_token, datetime.now(timezone.utc))
        if token is None:
            logger.debug("No stored token for %s, skipping disconnect report", base_url)
            return
        if fire_and_forget:
            task = asyncio.create_task(self._post_disconnect(base_url, token))
            self._background.add(task)
            task.add_done_callback(self._background_done)
            return
        await self._post_disconnect(base_url, token)

    async def _post_disconnect(self, base_url: str, token: _StoredToken) -> None:
        url = f"{base_url.rstrip('/')}/disconnect"
        try:
            async with self._client() as client:
                response = await client.post(url, headers=_bearer(token))
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DisconnectReportError(f"Could not report disconnect to {url}: {e}") from e
        logger.info("Reported disconnect to %s", url)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Fire-and-forget disconnect report failed: %s", task.exception())

    async def aclose(self, timeout: float = 5.0) -> None:
        """Wait briefly for background requests to finish."""
        if not self._background:
            return
        _, pending = await asyncio.wait(set(self._background), timeout=timeout)
        for task in pending:
            task.cancel()


def _bearer(token: _StoredToken) -> dict[str, str]:
    return {"Authorization": f"Bearer {token.access_token}"}


def _with_private_key(config: str, private_key: str | None) -> str:
    """Insert the client's private key into a wg-quick [Interface] section."""
    if private_key is None:
        return config
    lines = config.splitlines()
    for i, line in enumerate(lines):
        if line.strip() == "[Interface]":
            lines.insert(i + 1, f"PrivateKey = {private_key}")
            break
    return "\n".join(lines) + "\n"
