"""
Tests for ConnectionFlow with fake server API, tunnel and notification center.
"""

import asyncio
from datetime import timedelta

import pytest
from pydantic import SecretStr

from vpnflow.api.base import ApiOptions
from vpnflow.api.errors import DisconnectReportError, ProfileConfigError, RequestCancelled
from vpnflow.api.models import PasswordStrategy, StaticConfigTarget, StaticCredentials
from vpnflow.flow.connection import RENEW_OPTIONS, ConnectionFlow, FlowContinuationPolicy, choose_profile
from vpnflow.flow.errors import (
    InvalidFlowState,
    NoProfiles,
    NoSelectedProfile,
    SelectedProfileNotFound,
)
from vpnflow.flow.events import (
    DidBeginConnecting,
    ProfilesFound,
    SessionExpired,
    SignalChanged,
    WillAttemptToConnect,
    WillAutoSelectProfile,
)
from vpnflow.flow.notifications import SESSION_ABOUT_TO_EXPIRE_ID, SESSION_HAS_EXPIRED_ID, NotificationScheduler
from vpnflow.flow.session import Expired, ExpiryPolicy, ValidFor
from vpnflow.flow.state import ControlKind, FlowStatus, InfoVisibility, InternalState, NoProfilesAvailable
from vpnflow.flow.storage import DataStore
from vpnflow.utils.credentials import Credentials
from vpnflow.vpn.base import TunnelError, TunnelStatus

from conftest import API_URL, SERVER_URL, FakePasswordPrompt, fake_info_provider, make_profile


def signal_values(events, name):
    return [e.value for e in events if isinstance(e, SignalChanged) and e.name == name]


class BlockingConsentPrompt:
    """Consent prompt the user answers only when the test says so."""

    def __init__(self):
        self.opened = asyncio.Event()
        self.answer = asyncio.Event()

    async def ask_consent(self) -> bool:
        self.opened.set()
        await self.answer.wait()
        return True


def attempt_files(tmp_path):
    return list(tmp_path.glob("targets/*/last_connection_attempt.json"))


class TestChooseProfile:
    """Test the continuation policies."""

    PROFILES = [make_profile("internet"), make_profile("office")]

    def test_single_profile(self):
        chosen = choose_profile(
            FlowContinuationPolicy.CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE, self.PROFILES[:1], None
        )
        assert chosen.profile_id == "internet"

    def test_last_used_profile(self):
        chosen = choose_profile(
            FlowContinuationPolicy.CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE, self.PROFILES, "office"
        )
        assert chosen.profile_id == "office"

    def test_halts_without_single_or_last_used(self):
        chosen = choose_profile(
            FlowContinuationPolicy.CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE, self.PROFILES, "gone"
        )
        assert chosen is None

    def test_any_prefers_last_used(self):
        chosen = choose_profile(FlowContinuationPolicy.CONTINUE_WITH_ANY_PROFILE, self.PROFILES, "office")
        assert chosen.profile_id == "office"

    def test_any_falls_back_to_first(self):
        chosen = choose_profile(FlowContinuationPolicy.CONTINUE_WITH_ANY_PROFILE, self.PROFILES, None)
        assert chosen.profile_id == "internet"

    def test_any_with_no_profiles(self):
        assert choose_profile(FlowContinuationPolicy.CONTINUE_WITH_ANY_PROFILE, [], None) is None

    @pytest.mark.parametrize("policy", [
        FlowContinuationPolicy.DO_NOT_CONTINUE,
        FlowContinuationPolicy.NOT_APPLICABLE,
    ])
    def test_never_continue(self, policy):
        assert choose_profile(policy, self.PROFILES[:1], "internet") is None


class TestBeginServerFlow:
    """Test the flow from server info to an enabled tunnel."""

    @pytest.mark.asyncio
    async def test_single_profile_connects(self, flow, tunnel, api, data_store, events):
        """Test a lone profile is selected automatically and the tunnel enabled."""
        await flow.begin_server_flow()

        assert flow.state == InternalState.ENABLED
        assert ("enable", "wireguard") in tunnel.calls
        assert WillAutoSelectProfile("internet") in events
        assert data_store.selected_profile_id == "internet"
        assert flow.connecting_profile.profile_id == "internet"
        assert flow.signals.status == FlowStatus.CONNECTED
        assert flow.signals.vpn_toggle.is_on is True
        assert isinstance(flow.signals.status_detail, ValidFor)

    @pytest.mark.asyncio
    async def test_status_sequence(self, flow, events):
        """Test each status is published once, in order."""
        await flow.begin_server_flow()

        assert signal_values(events, "status") == [
            FlowStatus.GETTING_SERVER_INFO,
            FlowStatus.GETTING_PROFILES,
            FlowStatus.CONFIGURING,
            FlowStatus.CONNECTING,
            FlowStatus.CONNECTED,
        ]
        assert signal_values(events, "can_go_back") == [False]

    @pytest.mark.asyncio
    async def test_events(self, flow, events):
        await flow.begin_server_flow()

        assert any(isinstance(e, ProfilesFound) and len(e.profiles) == 1 for e in events)
        attempts = [e for e in events if isinstance(e, WillAttemptToConnect)]
        assert len(attempts) == 1
        assert attempts[0].record.selected_profile_id == "internet"
        assert DidBeginConnecting(None, False) in events

    @pytest.mark.asyncio
    async def test_attempt_record_saved(self, flow, tunnel, data_store):
        await flow.begin_server_flow()

        record = data_store.load_attempt()
        assert record.attempt_id == tunnel.current_attempt_id
        assert record.server_api_base_url == API_URL
        assert record.session_expires_at == flow.session_expires_at

    @pytest.mark.asyncio
    async def test_notifications_scheduled(self, flow, center, consent):
        await flow.begin_server_flow()

        assert await flow.wait_for_notifications() is True
        assert consent.asked == 1
        assert {r.identifier for r in center.pending()} == {SESSION_ABOUT_TO_EXPIRE_ID, SESSION_HAS_EXPIRED_ID}

    @pytest.mark.asyncio
    async def test_consent_prompt_does_not_hold_connect(
        self, server_target, tunnel, data_store, api, center, preferences, clock
    ):
        """Test connecting returns while the consent prompt is still open."""
        prompt = BlockingConsentPrompt()
        notifier = NotificationScheduler(center, preferences, prompt, clock=clock)
        flow = ConnectionFlow(server_target, tunnel, data_store, api=api, notifier=notifier, clock=clock)
        try:
            await flow.begin_server_flow()
            await prompt.opened.wait()

            assert flow.state == InternalState.ENABLED
            assert center.pending() == []

            prompt.answer.set()
            assert await flow.wait_for_notifications() is True
            assert len(center.pending()) == 2
        finally:
            flow.close()

    @pytest.mark.asyncio
    async def test_disable_drops_unanswered_consent(
        self, server_target, tunnel, data_store, api, center, preferences, clock
    ):
        prompt = BlockingConsentPrompt()
        notifier = NotificationScheduler(center, preferences, prompt, clock=clock)
        flow = ConnectionFlow(server_target, tunnel, data_store, api=api, notifier=notifier, clock=clock)
        try:
            await flow.begin_server_flow()
            await prompt.opened.wait()

            await flow.disable(report_to_server=False, fire_and_forget=False)

            assert await flow.wait_for_notifications() is False
            assert center.pending() == []
            assert preferences.has_asked_user_consent is False
        finally:
            flow.close()

    @pytest.mark.asyncio
    async def test_several_profiles_halt_for_selection(self, flow, tunnel, api):
        api.profiles = [make_profile("internet"), make_profile("office")]

        await flow.begin_server_flow()

        assert flow.state == InternalState.IDLE
        assert not any(call[0] == "enable" for call in tunnel.calls)
        assert flow.signals.additional_control.kind == ControlKind.PROFILE_SELECTOR
        assert flow.signals.can_go_back is True

    @pytest.mark.asyncio
    async def test_last_used_profile_connects(self, flow, api, data_store):
        api.profiles = [make_profile("internet"), make_profile("office")]
        data_store.selected_profile_id = "office"

        await flow.begin_server_flow()

        assert flow.connecting_profile.profile_id == "office"

    @pytest.mark.asyncio
    async def test_stale_remembered_profile_is_forgotten(self, flow, api, data_store):
        api.profiles = [make_profile("internet"), make_profile("office")]
        data_store.selected_profile_id = "gone"

        await flow.begin_server_flow()

        assert flow.state == InternalState.IDLE
        assert data_store.selected_profile_id is None

    @pytest.mark.asyncio
    async def test_any_profile_policy(self, flow, api):
        api.profiles = [make_profile("internet"), make_profile("office")]

        await flow.begin_server_flow(FlowContinuationPolicy.CONTINUE_WITH_ANY_PROFILE)

        assert flow.connecting_profile.profile_id == "internet"

    @pytest.mark.asyncio
    async def test_do_not_continue(self, flow, tunnel):
        await flow.begin_server_flow(FlowContinuationPolicy.DO_NOT_CONTINUE)

        assert flow.state == InternalState.IDLE
        assert [p.profile_id for p in flow.profiles] == ["internet"]
        assert not any(call[0] == "enable" for call in tunnel.calls)

    @pytest.mark.asyncio
    async def test_no_profiles(self, flow, api):
        api.profiles = []

        await flow.begin_server_flow()

        assert flow.state == InternalState.IDLE
        assert flow.signals.status_detail == NoProfilesAvailable()

    @pytest.mark.asyncio
    async def test_rejects_enabled_tunnel(self, flow, tunnel):
        tunnel.is_enabled = True

        with pytest.raises(InvalidFlowState):
            await flow.begin_server_flow()

    @pytest.mark.asyncio
    async def test_config_error_reverts_to_idle(self, flow, api, data_store):
        """Test errors surface unchanged and leave nothing pending."""
        api.config_error = ProfileConfigError("profile config unavailable")

        with pytest.raises(ProfileConfigError):
            await flow.begin_server_flow()

        assert flow.state == InternalState.IDLE
        assert flow.signals.vpn_toggle.is_on is False
        assert data_store.load_attempt() is None

    @pytest.mark.asyncio
    async def test_enable_error_cleans_up(self, flow, tunnel, data_store, center):
        tunnel.enable_error = TunnelError("wg-quick failed")

        with pytest.raises(TunnelError):
            await flow.begin_server_flow()

        assert flow.state == InternalState.IDLE
        assert data_store.load_attempt() is None
        assert flow.session_status is None
        assert center.pending() == []


class TestContinueFlow:
    @pytest.mark.asyncio
    async def test_after_manual_selection(self, flow, api, tunnel):
        api.profiles = [make_profile("internet"), make_profile("office")]
        await flow.begin_server_flow()

        flow.select_profile("office")
        await flow.continue_flow()

        assert flow.state == InternalState.ENABLED
        assert ("get_tunnel_configuration", "office", ApiOptions.NONE) in api.calls

    @pytest.mark.asyncio
    async def test_unknown_profile(self, flow, api):
        """Test a profile missing from the fetched list fails and stays idle."""
        api.profiles = [make_profile("internet"), make_profile("office")]
        await flow.begin_server_flow()

        with pytest.raises(SelectedProfileNotFound):
            await flow.continue_flow("gone")

        assert flow.state == InternalState.IDLE
        assert not any(call[0] == "get_tunnel_configuration" for call in api.calls)

    @pytest.mark.asyncio
    async def test_no_selection(self, flow, api):
        api.profiles = [make_profile("internet"), make_profile("office")]
        await flow.begin_server_flow()

        with pytest.raises(NoSelectedProfile):
            await flow.continue_flow()

    @pytest.mark.asyncio
    async def test_no_profiles(self, flow):
        with pytest.raises(NoProfiles):
            await flow.continue_flow("internet")
        assert flow.state == InternalState.IDLE

    @pytest.mark.asyncio
    async def test_select_unknown_profile(self, flow):
        with pytest.raises(SelectedProfileNotFound):
            flow.select_profile("office")


class TestDisable:
    """Test disabling and disconnect reports."""

    @pytest.mark.asyncio
    async def test_disable_reports_and_cleans_up(self, flow, tunnel, api, data_store, center):
        await flow.begin_server_flow()

        await flow.disable()

        assert flow.state == InternalState.IDLE
        assert tunnel.is_enabled is False
        assert ("report_disconnect", API_URL, "internet", True) in api.calls
        assert data_store.load_attempt() is None
        assert center.pending() == []
        assert flow.session_status is None
        assert flow.connecting_profile is None
        assert flow.signals.status == FlowStatus.NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_disable_without_report(self, flow, api):
        await flow.begin_server_flow()

        await flow.disable(report_to_server=False)

        assert not any(call[0] == "report_disconnect" for call in api.calls)

    @pytest.mark.asyncio
    async def test_disable_when_idle_is_noop(self, flow, tunnel):
        await flow.disable()

        assert tunnel.calls == []
        assert flow.state == InternalState.IDLE

    @pytest.mark.asyncio
    async def test_disable_during_server_info_cancels(self, flow, api, tunnel):
        """Test switching off while server info loads cancels the request."""
        api.hold_server_info = True
        task = asyncio.create_task(flow.begin_server_flow())
        await api.server_info_requested.wait()
        assert flow.state == InternalState.GETTING_SERVER_INFO

        await flow.disable()

        with pytest.raises(RequestCancelled):
            await task
        assert ("cancel_get_server_info",) in api.calls
        assert not any(call[0] == "enable" for call in tunnel.calls)
        assert flow.state == InternalState.IDLE

    @pytest.mark.asyncio
    async def test_fire_and_forget_report_error_is_not_raised(self, flow, api):
        await flow.begin_server_flow()
        api.report_error = DisconnectReportError("server unreachable")

        await flow.disable(fire_and_forget=True)

        assert flow.state == InternalState.IDLE

    @pytest.mark.asyncio
    async def test_awaited_report_error_is_raised(self, flow, api):
        await flow.begin_server_flow()
        api.report_error = DisconnectReportError("server unreachable")

        with pytest.raises(DisconnectReportError):
            await flow.disable(fire_and_forget=False)

        assert flow.state == InternalState.IDLE

    @pytest.mark.asyncio
    async def test_tunnel_disable_error_stays_enabled(self, flow, tunnel):
        await flow.begin_server_flow()
        tunnel.disable_error = TunnelError("still up")

        with pytest.raises(TunnelError):
            await flow.disable()

        assert flow.state == InternalState.ENABLED

    @pytest.mark.asyncio
    async def test_single_attempt_record_across_cycles(self, flow, tmp_path):
        """Test at most one record exists and none after a full disable."""
        for _ in range(3):
            await flow.begin_server_flow()
            assert len(attempt_files(tmp_path)) == 1
            await flow.disable()
            assert attempt_files(tmp_path) == []


class TestRenewSession:
    @pytest.mark.asyncio
    async def test_renew_disables_then_reconnects_fresh(self, flow, api, calls):
        """Test renewing reports the disconnect and asks for new credentials."""
        await flow.begin_server_flow()
        calls.clear()

        await flow.renew_session()

        assert calls == [
            ("disable",),
            ("report_disconnect", API_URL, "internet", False),
            ("get_server_info", SERVER_URL),
            ("get_tunnel_configuration", "internet", RENEW_OPTIONS),
            ("enable", "wireguard"),
        ]
        assert flow.state == InternalState.ENABLED

    @pytest.mark.asyncio
    async def test_renew_without_connection(self, flow):
        with pytest.raises(NoSelectedProfile):
            await flow.renew_session()


class TestTunnelStatus:
    @pytest.mark.asyncio
    async def test_tunnel_drop_ends_session(self, flow, tunnel, data_store, center):
        await flow.begin_server_flow()

        tunnel.drop()

        assert flow.state == InternalState.IDLE
        assert data_store.load_attempt() is None
        assert center.pending() == []
        assert flow.session_status is None

    @pytest.mark.asyncio
    async def test_reasserting(self, flow, tunnel):
        await flow.begin_server_flow()

        tunnel.report(TunnelStatus.REASSERTING)

        assert flow.signals.status == FlowStatus.RECONNECTING
        assert flow.state == InternalState.ENABLED


class TestSessionExpiry:
    @pytest.mark.asyncio
    async def test_expiry_event_and_renew_button(self, server_target, tunnel, data_store, api, clock):
        flow = ConnectionFlow(
            server_target,
            tunnel,
            data_store,
            api=api,
            policy=ExpiryPolicy(tick_interval=timedelta(milliseconds=10)),
            clock=clock,
        )
        events = []
        flow.subscribe(events.append)
        try:
            await flow.begin_server_flow()
            clock.advance(hours=9)
            await asyncio.sleep(0.05)
        finally:
            flow.close()

        assert SessionExpired() in events
        assert flow.signals.status_detail == Expired()
        assert flow.signals.additional_control.kind == ControlKind.RENEW_SESSION_BUTTON


class TestRestore:
    """Test rebuilding the flow from an attempt record."""

    @pytest.mark.asyncio
    async def test_restore_running_tunnel(self, flow, server_target, tunnel, data_store, api, clock):
        await flow.begin_server_flow()
        record = data_store.load_attempt()
        flow.close()
        calls_before = len(api.calls)

        restored = ConnectionFlow(server_target, tunnel, data_store, api=api, clock=clock)
        try:
            assert restored.restore(record) is True
            assert len(api.calls) == calls_before
            assert restored.state == InternalState.ENABLED
            assert restored.connecting_profile.profile_id == "internet"
            assert isinstance(restored.session_status, ValidFor)

            await restored.disable()
        finally:
            restored.close()

        assert api.calls[-1] == ("report_disconnect", API_URL, "internet", True)
        assert data_store.load_attempt() is None

    @pytest.mark.asyncio
    async def test_restore_stale_record(self, flow, server_target, tunnel, data_store, api):
        await flow.begin_server_flow()
        record = data_store.load_attempt()
        await flow.disable()

        other = ConnectionFlow(server_target, tunnel, data_store, api=api)
        try:
            assert other.restore(record) is False
            assert other.state == InternalState.IDLE
        finally:
            other.close()

    @pytest.mark.asyncio
    async def test_schedule_on_active_vpn(self, flow, server_target, tunnel, data_store, api, notifier, center, preferences, clock):
        await flow.begin_server_flow()
        await flow.wait_for_notifications()
        record = data_store.load_attempt()
        flow.close()
        center.remove_all_pending()

        restored = ConnectionFlow(server_target, tunnel, data_store, api=api, notifier=notifier, clock=clock)
        try:
            restored.restore(record)
            assert await restored.schedule_notifications_on_active_vpn() is True
            assert notifier.is_about_to_expire_pending()

            preferences.user_wants_notifications = False
            assert await restored.schedule_notifications_on_active_vpn() is False
        finally:
            restored.close()

    @pytest.mark.asyncio
    async def test_schedule_without_tunnel(self, flow):
        assert await flow.schedule_notifications_on_active_vpn() is False


class TestConnectionInfo:
    @pytest.mark.asyncio
    async def test_expand_and_collapse(self, flow):
        await flow.begin_server_flow()
        assert flow.signals.connection_info_state.visibility == InfoVisibility.COLLAPSED

        await flow.expand_connection_info()
        state = flow.signals.connection_info_state
        assert state.visibility == InfoVisibility.EXPANDED
        assert state.info.profile_name == "Internet"
        assert flow.signals.additional_control.kind == ControlKind.NONE

        flow.collapse_connection_info()
        assert flow.signals.connection_info_state.visibility == InfoVisibility.COLLAPSED

    @pytest.mark.asyncio
    async def test_toggle(self, flow):
        await flow.begin_server_flow()

        await flow.toggle_connection_info()
        assert flow.signals.connection_info_state.visibility == InfoVisibility.EXPANDED
        await flow.toggle_connection_info()
        assert flow.signals.connection_info_state.visibility == InfoVisibility.COLLAPSED

    @pytest.mark.asyncio
    async def test_hidden_when_not_connected(self, flow):
        await flow.expand_connection_info()

        assert flow.signals.connection_info_state.visibility == InfoVisibility.HIDDEN


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "home.ovpn"
    path.write_text("client\nremote vpn.example.org 1194\n")
    return path


def static_flow(tmp_path, tunnel, target, prompt=None):
    return ConnectionFlow(
        target,
        tunnel,
        DataStore.for_target(tmp_path, target),
        password_prompt=prompt,
        info_provider=fake_info_provider,
    )


class TestStaticConfigFlow:
    """Test connecting with a pre-supplied OpenVPN config."""

    @pytest.mark.asyncio
    async def test_saved_password(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(
            name="home",
            config_path=config_file,
            credentials=StaticCredentials(username="alice", password=SecretStr("hunter2")),
        )
        flow = static_flow(tmp_path, tunnel, target)
        try:
            await flow.begin_static_config_flow()
        finally:
            flow.close()

        assert flow.state == InternalState.ENABLED
        assert tunnel.enable_kwargs["credentials"] == Credentials("alice", "hunter2")
        assert tunnel.enable_kwargs["should_disable_on_error"] is True
        assert tunnel.enable_kwargs["prevent_automatic_reconnect"] is False
        assert tunnel.enable_kwargs["config"].lines == ("client", "remote vpn.example.org 1194")

    @pytest.mark.asyncio
    async def test_anonymous(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(name="home", config_path=config_file)
        flow = static_flow(tmp_path, tunnel, target)
        try:
            await flow.begin_static_config_flow()
        finally:
            flow.close()

        assert tunnel.enable_kwargs["credentials"] is None

    @pytest.mark.asyncio
    async def test_ask_every_time(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(
            name="home",
            config_path=config_file,
            credentials=StaticCredentials(username="alice", password_strategy=PasswordStrategy.ASK_EVERY_TIME),
        )
        prompt = FakePasswordPrompt("typed")
        flow = static_flow(tmp_path, tunnel, target, prompt)
        events = []
        flow.subscribe(events.append)
        try:
            await flow.begin_static_config_flow()
            tunnel.report(TunnelStatus.CONNECTING)
        finally:
            flow.close()

        assert prompt.asked_for == ["alice"]
        assert tunnel.enable_kwargs["credentials"] == Credentials("alice", "typed")
        assert tunnel.enable_kwargs["should_disable_on_error"] is False
        assert tunnel.enable_kwargs["prevent_automatic_reconnect"] is True
        connecting = [e for e in events if isinstance(e, DidBeginConnecting)]
        assert [e.should_ask_for_password for e in connecting] == [False, True]

    @pytest.mark.asyncio
    async def test_cancelled_prompt(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(
            name="home",
            config_path=config_file,
            credentials=StaticCredentials(username="alice", password_strategy=PasswordStrategy.ASK_EVERY_TIME),
        )
        flow = static_flow(tmp_path, tunnel, target, FakePasswordPrompt(None))
        try:
            await flow.begin_static_config_flow()
        finally:
            flow.close()

        assert flow.state == InternalState.IDLE
        assert tunnel.calls == []

    @pytest.mark.asyncio
    async def test_disconnected_offers_credentials(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(name="home", config_path=config_file)
        flow = static_flow(tmp_path, tunnel, target)
        try:
            await flow.begin_static_config_flow()
            await flow.disable()
        finally:
            flow.close()

        assert flow.signals.additional_control.kind == ControlKind.SET_CREDENTIALS_BUTTON
        assert attempt_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_missing_config_file(self, tmp_path, tunnel):
        target = StaticConfigTarget(name="gone", config_path=tmp_path / "gone.ovpn")
        flow = static_flow(tmp_path, tunnel, target)
        try:
            with pytest.raises(TunnelError):
                await flow.begin_static_config_flow()
        finally:
            flow.close()
        assert flow.state == InternalState.IDLE

    @pytest.mark.asyncio
    async def test_server_flow_rejected(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(name="home", config_path=config_file)
        flow = static_flow(tmp_path, tunnel, target)
        try:
            with pytest.raises(InvalidFlowState):
                await flow.begin_server_flow()
        finally:
            flow.close()

    @pytest.mark.asyncio
    async def test_restore_static(self, tmp_path, tunnel, config_file):
        target = StaticConfigTarget(
            name="home",
            config_path=config_file,
            credentials=StaticCredentials(username="alice", password_strategy=PasswordStrategy.ASK_EVERY_TIME),
        )
        flow = static_flow(tmp_path, tunnel, target, FakePasswordPrompt("typed"))
        await flow.begin_static_config_flow()
        record = flow.data_store.load_attempt()
        flow.close()

        restored = static_flow(tmp_path, tunnel, target)
        events = []
        restored.subscribe(events.append)
        try:
            assert restored.restore(record) is True
            tunnel.report(TunnelStatus.CONNECTING)
        finally:
            restored.close()

        assert DidBeginConnecting(Credentials("alice", ""), True) in events
