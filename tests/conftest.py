"""Shared fakes for vpnflow tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import UUID

import pytest

from vpnflow.api.base import ApiOptions
from vpnflow.api.errors import RequestCancelled
from vpnflow.api.models import (
    Profile,
    ServerInfo,
    ServerTarget,
    TunnelConfiguration,
    WireGuardConfig,
)
from vpnflow.flow.connection import ConnectionFlow
from vpnflow.flow.notifications import NotificationRequest, NotificationScheduler
from vpnflow.flow.storage import DataStore
from vpnflow.utils.credentials import Credentials
from vpnflow.utils.preferences import InMemoryPreferences
from vpnflow.vpn.base import TunnelStatus
from vpnflow.vpn.status import ConnectionInfo

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SERVER_URL = "https://vpn.example.org/"
API_URL = "https://vpn.example.org/vpn-user-portal/api/v3"


def make_profile(profile_id: str, name: str | None = None) -> Profile:
    return Profile(profile_id=profile_id, display_name={"en": name or profile_id.title()})


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTunnel:
    """In-memory tunnel that reports status changes synchronously."""

    def __init__(self, calls: list):
        self.calls = calls
        self.is_enabled = False
        self.current_attempt_id: UUID | None = None
        self.status = TunnelStatus.DISCONNECTED
        self.enable_error: Exception | None = None
        self.disable_error: Exception | None = None
        self.enable_kwargs: dict = {}
        self._listeners = []

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def report(self, status: TunnelStatus) -> None:
        self.status = status
        for listener in list(self._listeners):
            listener(status)

    async def enable(
        self,
        config,
        attempt_id,
        credentials: Credentials | None = None,
        *,
        should_disable_on_error=True,
        prevent_automatic_reconnect=False,
    ):
        self.calls.append(("enable", config.kind))
        self.enable_kwargs = {
            "config": config,
            "credentials": credentials,
            "should_disable_on_error": should_disable_on_error,
            "prevent_automatic_reconnect": prevent_automatic_reconnect,
        }
        if self.enable_error is not None:
            raise self.enable_error
        self.is_enabled = True
        self.current_attempt_id = attempt_id
        self.report(TunnelStatus.CONNECTING)
        self.report(TunnelStatus.CONNECTED)

    async def disable(self):
        self.calls.append(("disable",))
        if self.disable_error is not None:
            raise self.disable_error
        self.report(TunnelStatus.DISCONNECTING)
        self.is_enabled = False
        self.current_attempt_id = None
        self.report(TunnelStatus.DISCONNECTED)

    def drop(self) -> None:
        """Simulate the tunnel going away on its own."""
        self.is_enabled = False
        self.current_attempt_id = None
        self.report(TunnelStatus.DISCONNECTED)


class FakeServerAPI:
    """Server API returning canned profiles and configurations."""

    def __init__(self, calls: list, profiles: list[Profile], clock: FakeClock):
        self.calls = calls
        self.profiles = profiles
        self.clock = clock
        self.session_length = timedelta(hours=8)
        self.config_error: Exception | None = None
        self.report_error: Exception | None = None
        self.hold_server_info = False
        self.server_info_requested = asyncio.Event()
        self._cancelled = asyncio.Event()

    async def get_server_info(self, target):
        self.calls.append(("get_server_info", target.api_base_url))
        self.server_info_requested.set()
        if self.hold_server_info:
            await self._cancelled.wait()
            raise RequestCancelled("cancelled")
        return ServerInfo(
            api_base_url=API_URL,
            authorization_endpoint=f"{SERVER_URL}oauth/authorize",
            token_endpoint=f"{SERVER_URL}oauth/token",
        )

    def cancel_get_server_info(self):
        self.calls.append(("cancel_get_server_info",))
        self._cancelled.set()

    async def get_available_profiles(self, target, server_info, authorizer, options=ApiOptions.NONE):
        self.calls.append(("get_available_profiles",))
        return list(self.profiles)

    async def get_tunnel_configuration(self, target, server_info, profile, authorizer, options=ApiOptions.NONE):
        self.calls.append(("get_tunnel_configuration", profile.profile_id, options))
        if self.config_error is not None:
            raise self.config_error
        return TunnelConfiguration(
            vpn_config=WireGuardConfig(text="[Interface]\nAddress = 10.0.0.2/32\n"),
            expires_at=self.clock() + self.session_length,
            authenticated_at=self.clock(),
            server_api_base_url=API_URL,
        )

    async def report_disconnect(self, api_version, base_url, profile, fire_and_forget):
        self.calls.append(("report_disconnect", base_url, profile.profile_id, fire_and_forget))
        if self.report_error is not None:
            raise self.report_error


class FakeNotificationCenter:
    """Notification center that keeps pending requests in a dict."""

    def __init__(self, permission: bool = True):
        self.permission = permission
        self.permission_requests = 0
        self.added: list[NotificationRequest] = []
        self._pending: dict[str, NotificationRequest] = {}

    async def request_permission(self) -> bool:
        self.permission_requests += 1
        return self.permission

    async def add(self, request: NotificationRequest) -> None:
        self.added.append(request)
        self._pending[request.identifier] = request

    def remove_pending(self, identifiers) -> None:
        for identifier in identifiers:
            self._pending.pop(identifier, None)

    def remove_all_pending(self) -> None:
        self._pending.clear()

    def pending(self) -> list[NotificationRequest]:
        return list(self._pending.values())


class FakeConsentPrompt:
    def __init__(self, answer: bool = True):
        self.answer = answer
        self.asked = 0

    async def ask_consent(self) -> bool:
        self.asked += 1
        return self.answer


class FakeGuidance:
    def __init__(self):
        self.shown: list[str] = []

    def show_notifications_disabled(self, app_name: str) -> None:
        self.shown.append(app_name)


class FakePasswordPrompt:
    def __init__(self, password: str | None = "secret"):
        self.password = password
        self.asked_for: list[str] = []

    async def ask_password(self, username: str) -> str | None:
        self.asked_for.append(username)
        return self.password


async def fake_info_provider(profile_name, connected_since):
    return ConnectionInfo(profile_name=profile_name, public_ip="192.0.2.10", city="Utrecht")


@pytest.fixture
def calls():
    """Ordered log of collaborator calls."""
    return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tunnel(calls):
    return FakeTunnel(calls)


@pytest.fixture
def profiles():
    return [make_profile("internet")]


@pytest.fixture
def api(calls, profiles, clock):
    return FakeServerAPI(calls, profiles, clock)


@pytest.fixture
def center():
    return FakeNotificationCenter()


@pytest.fixture
def preferences():
    return InMemoryPreferences()


@pytest.fixture
def consent():
    return FakeConsentPrompt()


@pytest.fixture
def guidance():
    return FakeGuidance()


@pytest.fixture
def notifier(center, preferences, consent, guidance, clock):
    return NotificationScheduler(center, preferences, consent, guidance, clock=clock)


@pytest.fixture
def server_target():
    return ServerTarget(api_base_url=SERVER_URL, auth_base_url=SERVER_URL)


@pytest.fixture
def data_store(tmp_path: Path, server_target):
    return DataStore.for_target(tmp_path, server_target)


@pytest.fixture
async def flow(server_target, tunnel, data_store, api, notifier, clock):
    """Connection flow for a server with fake collaborators."""
    flow = ConnectionFlow(
        server_target,
        tunnel,
        data_store,
        api=api,
        notifier=notifier,
        clock=clock,
        info_provider=fake_info_provider,
    )
    yield flow
    flow.close()


@pytest.fixture
def events(flow):
    """Events published by the flow fixture."""
    received = []
    flow.subscribe(received.append)
    return received

