"""Connection flow: from server discovery to an enabled tunnel and back."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Protocol
from uuid import UUID

from ..api.base import ApiOptions, Authorizer, ServerAPI
from ..api.errors import is_user_cancelled
from ..api.models import (
    ConnectableTarget,
    OpenVPNConfig,
    PasswordStrategy,
    Profile,
    ServerInfo,
    ServerTarget,
    StaticConfigTarget,
)
from ..utils.credentials import Credentials
from ..vpn.base import TunnelController, TunnelError, TunnelStatus
from ..vpn.status import ConnectionInfo, get_connection_info
from .errors import InvalidFlowState, NoProfiles, NoSelectedProfile, SelectedProfileNotFound
from .events import (
    DidBeginConnecting,
    FlowEvent,
    ProfilesFound,
    SessionExpired,
    WillAttemptToConnect,
    WillAutoSelectProfile,
)
from .notifications import NotificationScheduler
from .session import AboutToExpire, Clock, Expired, ExpiryPolicy, SessionExpiryTracker, SessionStatus, ValidFor, utcnow
from .state import (
    ConnectionInfoChanged,
    FlowSnapshot,
    InputEvent,
    InternalState,
    ProfilesChanged,
    SessionStatusChanged,
    Signals,
    StateChanged,
    TunnelStatusChanged,
    derive,
    reduce,
)
from .storage import ConnectionAttemptRecord, DataStore

logger = logging.getLogger(__name__)

FlowListener = Callable[[FlowEvent], None]
InfoProvider = Callable[[str | None, datetime | None], Awaitable[ConnectionInfo]]

RENEW_OPTIONS = ApiOptions.IGNORE_STORED_AUTH_STATE | ApiOptions.IGNORE_STORED_KEY_PAIR


class FlowContinuationPolicy(Enum):
    """Whether to go on connecting once the profile list is in."""

    CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE = "single_or_last_used"
    CONTINUE_WITH_ANY_PROFILE = "any"
    DO_NOT_CONTINUE = "do_not_continue"
    NOT_APPLICABLE = "not_applicable"


class PasswordPrompt(Protocol):
    async def ask_password(self, username: str) -> str | None:
        """Ask for the password of a static config; None if cancelled."""
        ...


@dataclass(frozen=True)
class DisconnectReportInfo:
    """Where to tell the server that a configuration is no longer used."""

    api_base_url: str
    api_version: str


def choose_profile(
    policy: FlowContinuationPolicy,
    profiles: list[Profile] | tuple[Profile, ...],
    last_used_profile_id: str | None,
) -> Profile | None:
    """Pick the profile to continue with, or None to stop for manual selection."""
    last_used = next((p for p in profiles if p.profile_id == last_used_profile_id), None)
    if policy == FlowContinuationPolicy.CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE:
        single = profiles[0] if len(profiles) == 1 else None
        return last_used or single
    if policy == FlowContinuationPolicy.CONTINUE_WITH_ANY_PROFILE:
        return last_used or (profiles[0] if profiles else None)
    return None


def _log_scheduling_error(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Could not schedule session expiry notifications: %s", task.exception())


class ConnectionFlow:
    """Drive the connection to a single target.

    Derived signals are recomputed from the internal state, the last seen
    tunnel status, the fetched profiles and the session status after
    every change, and published to subscribers only when they change.
    Calls must be serialized by the caller; calls that do not fit the
    current state raise InvalidFlowState.
    """

    def __init__(
        self,
        target: ConnectableTarget,
        tunnel: TunnelController,
        data_store: DataStore,
        *,
        api: ServerAPI | None = None,
        authorizer: Authorizer | None = None,
        notifier: NotificationScheduler | None = None,
        password_prompt: PasswordPrompt | None = None,
        policy: ExpiryPolicy = ExpiryPolicy(),
        clock: Clock = utcnow,
        info_provider: InfoProvider = get_connection_info,
    ):
        self.target = target
        self.tunnel = tunnel
        self.data_store = data_store
        self.api = api
        self.authorizer = authorizer
        self.notifier = notifier
        self.password_prompt = password_prompt
        self.policy = policy
        self.clock = clock
        self.info_provider = info_provider

        self._snapshot = FlowSnapshot(
            is_server_target=isinstance(target, ServerTarget),
            tunnel_status=tunnel.status,
            tunnel_enabled=tunnel.is_enabled,
        )
        self._listeners: list[FlowListener] = []
        self._tracker: SessionExpiryTracker | None = None
        self._attempt_id: UUID | None = None
        self._connecting_profile: Profile | None = None
        self._disconnect_report: DisconnectReportInfo | None = None
        self._credentials: Credentials | None = None
        self._should_ask_for_password_on_reconnect = False
        self._is_beginning_static_flow = False
        self._connected_since: datetime | None = None
        self._info_task: asyncio.Task | None = None
        self._scheduling_task: asyncio.Task | None = None
        self._unsubscribe_tunnel = tunnel.subscribe(self._on_tunnel_status)

    # Observable state

    @property
    def state(self) -> InternalState:
        return self._snapshot.state

    @property
    def signals(self) -> Signals:
        return derive(self._snapshot)

    @property
    def profiles(self) -> tuple[Profile, ...] | None:
        return self._snapshot.profiles

    @property
    def session_status(self) -> SessionStatus | None:
        return self._snapshot.session_status

    @property
    def session_expires_at(self) -> datetime | None:
        return self._tracker.expires_at if self._tracker else None

    @property
    def connecting_profile(self) -> Profile | None:
        return self._connecting_profile

    def subscribe(self, listener: FlowListener) -> Callable[[], None]:
        """Register for flow events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: FlowEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def _dispatch(self, event: InputEvent) -> None:
        self._snapshot, changes = reduce(self._snapshot, event)
        for change in changes:
            self._emit(change)

    def _set_state(self, state: InternalState) -> None:
        if state != self._snapshot.state:
            logger.debug("Flow state %s -> %s", self._snapshot.state.value, state.value)
        self._dispatch(StateChanged(state, self.tunnel.is_enabled))

    def _set_profiles(self, profiles: tuple[Profile, ...] | None) -> None:
        self._dispatch(ProfilesChanged(profiles))
        self._emit(ProfilesFound(profiles or ()))

    def _settle(self) -> None:
        """Move to Enabled or Idle depending on whether the tunnel is up."""
        settled_states = (
            InternalState.ENABLE_REQUESTED,
            InternalState.DISABLE_REQUESTED,
            InternalState.ENABLED,
        )
        if self.tunnel.is_enabled and self.state in settled_states:
            self._set_state(InternalState.ENABLED)
            return
        if self.state != InternalState.IDLE:
            self._set_state(InternalState.IDLE)
        if not self.tunnel.is_enabled:
            self._end_session()

    def _end_session(self) -> None:
        """Stop expiry tracking and forget the attempt."""
        self._cancel_scheduling()
        if self._tracker is not None:
            self._tracker.stop()
            self._tracker = None
            if self.notifier is not None:
                self.notifier.deschedule()
        self._dispatch(SessionStatusChanged(None))
        if self._attempt_id is not None:
            self.data_store.remove_attempt()
            self._attempt_id = None

    def _log_error(self, error: BaseException) -> None:
        if is_user_cancelled(error):
            logger.info("Cancelled: %s", error)
        else:
            logger.error("Error: %s", error)

    def _require_server(self) -> ServerTarget:
        if not isinstance(self.target, ServerTarget) or self.api is None:
            raise InvalidFlowState("Not a server connection")
        return self.target

    def _require_idle(self) -> None:
        if self.state != InternalState.IDLE:
            raise InvalidFlowState(f"Flow is busy ({self.state.value})")
        if self.tunnel.is_enabled:
            raise InvalidFlowState("Tunnel is already enabled")

    # Server flow

    async def begin_server_flow(
        self,
        policy: FlowContinuationPolicy = FlowContinuationPolicy.CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE,
        last_used_profile_id: str | None = None,
    ) -> None:
        """Fetch the profiles of the server and, if the policy picks one, connect.

        Args:
            policy: How to pick a profile once the list is in
            last_used_profile_id: Profile to prefer; defaults to the one
                remembered for this server
        """
        target = self._require_server()
        self._require_idle()
        if last_used_profile_id is None:
            last_used_profile_id = self.data_store.selected_profile_id

        logger.info("Beginning connection flow for server '%s'", target.api_base_url)
        try:
            try:
                self._set_state(InternalState.GETTING_SERVER_INFO)
                logger.info("Getting server info for server '%s'", target.api_base_url)
                server_info = await self.api.get_server_info(target)
                self._set_state(InternalState.GETTING_PROFILES)
                logger.info(
                    "Getting available profiles in server '%s' using API v%s",
                    server_info.api_base_url, server_info.api_version,
                )
                profiles = await self.api.get_available_profiles(target, server_info, self.authorizer)
            except Exception as e:
                self._log_error(e)
                raise

            self._set_profiles(tuple(profiles))
            logger.info("Got available profiles: %s", ", ".join(p.profile_id for p in profiles))
            if last_used_profile_id and not any(p.profile_id == last_used_profile_id for p in profiles):
                self.data_store.selected_profile_id = None

            profile = choose_profile(policy, profiles, last_used_profile_id)
            if profile is None:
                self._set_state(InternalState.IDLE)
                return
            self._emit(WillAutoSelectProfile(profile.profile_id))
            self.data_store.selected_profile_id = profile.profile_id
            await self.continue_flow(profile.profile_id, server_info=server_info)
        finally:
            self._settle()

    async def continue_flow(
        self,
        profile_id: str | None = None,
        *,
        server_info: ServerInfo | None = None,
        options: ApiOptions = ApiOptions.NONE,
    ) -> None:
        """Get a tunnel configuration for a profile and enable the tunnel.

        Args:
            profile_id: Profile to connect with; defaults to the remembered one
            server_info: Server info from a flow in progress, fetched if None
            options: Cache-busting options for the configuration request

        Raises:
            NoProfiles: No profiles have been fetched
            NoSelectedProfile: No profile given and none remembered
            SelectedProfileNotFound: Profile is not in the fetched list
        """
        target = self._require_server()
        if self.state not in (InternalState.IDLE, InternalState.GETTING_PROFILES):
            raise InvalidFlowState(f"Flow is busy ({self.state.value})")

        try:
            try:
                profile = self._resolve_profile(profile_id)
                logger.info(
                    "Continuing connection flow for server '%s' for profile id '%s'",
                    target.api_base_url, profile.profile_id,
                )
                if server_info is None:
                    self._set_state(InternalState.GETTING_SERVER_INFO)
                    logger.info("Getting server info for server '%s'", target.api_base_url)
                    server_info = await self.api.get_server_info(target)
                self._set_state(InternalState.CONFIGURING)
                self._connecting_profile = profile
                logger.info(
                    "Getting tunnel config from API base URL '%s' using API v%s",
                    server_info.api_base_url, server_info.api_version,
                )
                config = await self.api.get_tunnel_configuration(
                    target, server_info, profile, self.authorizer, options
                )
            except Exception as e:
                self._log_error(e)
                raise

            self._set_state(InternalState.ENABLE_REQUESTED)
            self._start_tracker(config.expires_at, config.authenticated_at)
            self._disconnect_report = DisconnectReportInfo(
                config.server_api_base_url, config.server_api_version
            )
            record = ConnectionAttemptRecord(
                target=target,
                profiles=self.profiles or (),
                selected_profile_id=profile.profile_id,
                session_expires_at=config.expires_at,
                session_authenticated_at=config.authenticated_at,
                server_api_base_url=config.server_api_base_url,
                server_api_version=config.server_api_version,
            )
            self.data_store.save_attempt(record)
            self._attempt_id = record.attempt_id
            self._emit(WillAttemptToConnect(record))

            logger.info("Got %s tunnel config expiring at %s", config.vpn_config.kind, config.expires_at)
            try:
                await self.tunnel.enable(
                    config.vpn_config,
                    record.attempt_id,
                    None,
                    should_disable_on_error=True,
                    prevent_automatic_reconnect=False,
                )
            except Exception as e:
                self._log_error(e)
                raise

            self._settle()
            if self.notifier is not None and self.state == InternalState.ENABLED:
                self._start_scheduling(config.expires_at, config.authenticated_at, record.attempt_id)
        finally:
            self._settle()

    def _resolve_profile(self, profile_id: str | None) -> Profile:
        if profile_id is None:
            profile_id = self.data_store.selected_profile_id
        if not self.profiles:
            raise NoProfiles("No profiles found")
        if profile_id is None:
            raise NoSelectedProfile("No profile selected")
        for profile in self.profiles:
            if profile.profile_id == profile_id:
                return profile
        raise SelectedProfileNotFound(f"Profile '{profile_id}' doesn't exist")

    def select_profile(self, profile_id: str) -> Profile:
        """Remember a profile for the next connection to this server."""
        for profile in self.profiles or ():
            if profile.profile_id == profile_id:
                self.data_store.selected_profile_id = profile_id
                logger.info("Selected profile '%s'", profile_id)
                return profile
        raise SelectedProfileNotFound(f"Profile '{profile_id}' doesn't exist")

    # Static config flow

    async def begin_static_config_flow(self) -> None:
        """Enable the tunnel with the target's configuration file.

        Asks for the password first if the target's credentials say so;
        a cancelled prompt leaves the flow idle.
        """
        target = self.target
        if not isinstance(target, StaticConfigTarget):
            raise InvalidFlowState("Not a static config connection")
        self._require_idle()

        logger.info("Beginning connection flow for config '%s'", target.name)
        try:
            lines = tuple(target.config_path.read_text().splitlines())
        except OSError as e:
            raise TunnelError(f"Cannot read {target.config_path}: {e}") from e

        resolved = await self._static_credentials(target)
        if resolved is None:
            logger.info("Password entry cancelled")
            return
        credentials, ask_every_time = resolved

        record = ConnectionAttemptRecord(
            target=target,
            should_ask_for_password_on_reconnect=ask_every_time,
        )
        self._set_state(InternalState.ENABLE_REQUESTED)
        self._should_ask_for_password_on_reconnect = ask_every_time
        self._credentials = credentials
        self._is_beginning_static_flow = True
        try:
            self.data_store.save_attempt(record)
            self._attempt_id = record.attempt_id
            self._emit(WillAttemptToConnect(record))
            await self.tunnel.enable(
                OpenVPNConfig(lines=lines),
                record.attempt_id,
                credentials,
                should_disable_on_error=not ask_every_time,
                prevent_automatic_reconnect=ask_every_time,
            )
        except Exception as e:
            self._log_error(e)
            raise
        finally:
            self._is_beginning_static_flow = False
            self._settle()

    async def _static_credentials(
        self, target: StaticConfigTarget
    ) -> tuple[Credentials | None, bool] | None:
        """Credentials to connect with and whether to ask again on reconnect.

        Returns None if the user cancelled the password prompt.
        """
        stored = target.credentials
        if stored is None:
            return None, False
        if stored.password_strategy == PasswordStrategy.SAVED:
            password = stored.password.get_secret_value() if stored.password else ""
            return Credentials(stored.username, password), False

        if self.password_prompt is None:
            raise InvalidFlowState("Password must be entered but there is no prompt")
        password = await self.password_prompt.ask_password(stored.username)
        if password is None:
            return None
        return Credentials(stored.username, password), True

    # Disabling

    async def disable(self, *, report_to_server: bool = True, fire_and_forget: bool = True) -> None:
        """Disable the tunnel, or cancel a server info request in flight.

        Does nothing if the tunnel is not enabled.

        Args:
            report_to_server: Tell the server the configuration is no longer used
            fire_and_forget: Do not wait for or fail on that report
        """
        if self.state == InternalState.GETTING_SERVER_INFO:
            logger.info("Cancelling server info request")
            if self.api is not None:
                self.api.cancel_get_server_info()
            return

        if not self.tunnel.is_enabled:
            logger.debug("Tunnel is not enabled, nothing to disable")
            if self.state == InternalState.ENABLED:
                self._settle()
            return

        if self.state == InternalState.IDLE:
            # Adopt a tunnel enabled elsewhere
            self._set_state(InternalState.ENABLED)
        elif self.state != InternalState.ENABLED:
            raise InvalidFlowState(f"Flow is busy ({self.state.value})")

        try:
            self._set_state(InternalState.DISABLE_REQUESTED)
            logger.info("Disabling tunnel")
            try:
                await self.tunnel.disable()
            except Exception as e:
                self._log_error(e)
                raise
            self._cancel_info_task()
            self._end_session()
            if report_to_server:
                await self._report_disconnect(fire_and_forget)
        finally:
            self._settle()
            if self.state == InternalState.IDLE:
                self._connecting_profile = None
                self._disconnect_report = None

    async def _report_disconnect(self, fire_and_forget: bool) -> None:
        info, profile = self._disconnect_report, self._connecting_profile
        if info is None or profile is None or self.api is None:
            return
        logger.info("Reporting disconnection of profile '%s' to '%s'", profile.profile_id, info.api_base_url)
        try:
            await self.api.report_disconnect(info.api_version, info.api_base_url, profile, fire_and_forget)
        except Exception as e:
            if fire_and_forget:
                logger.warning("Ignoring failed disconnect report: %s", e)
                return
            self._log_error(e)
            raise

    async def renew_session(self) -> None:
        """Disable the tunnel and connect again with fresh authorization and keys."""
        profile = self._connecting_profile
        if profile is None:
            raise NoSelectedProfile("No connected profile to renew")
        logger.info("Renewing session for profile '%s'", profile.profile_id)
        await self.disable(report_to_server=True, fire_and_forget=False)
        await self.continue_flow(profile.profile_id, options=RENEW_OPTIONS)

    # Restoring

    def restore(self, record: ConnectionAttemptRecord) -> bool:
        """Rebuild the state of a running tunnel from its attempt record.

        Makes no network calls. Needs a running event loop for the
        expiry tracker.

        Returns:
            True if the record belongs to the running tunnel and was restored
        """
        if record.target.local_storage_path != self.target.local_storage_path:
            return False
        if not self.tunnel.is_enabled or self.tunnel.current_attempt_id != record.attempt_id:
            logger.info("Connection attempt %s is not running, not restoring", record.attempt_id)
            return False
        if self.state != InternalState.IDLE:
            raise InvalidFlowState(f"Flow is busy ({self.state.value})")

        logger.info("Restoring connection attempt %s", record.attempt_id)
        self._attempt_id = record.attempt_id
        if isinstance(self.target, ServerTarget):
            self._set_profiles(record.profiles)
            self._connecting_profile = record.selected_profile
            if record.session_expires_at is not None:
                self._start_tracker(record.session_expires_at, record.session_authenticated_at)
            if record.server_api_base_url is not None:
                self._disconnect_report = DisconnectReportInfo(
                    record.server_api_base_url, record.server_api_version or "3"
                )
        else:
            self._should_ask_for_password_on_reconnect = record.should_ask_for_password_on_reconnect
            stored = record.target.credentials
            self._credentials = Credentials(stored.username if stored else "", "")
        self._set_state(InternalState.ENABLED)
        return True

    async def schedule_notifications_on_active_vpn(self) -> bool:
        """Schedule expiry notifications for a restored server connection.

        Returns:
            True if notifications were scheduled
        """
        if not self.tunnel.is_enabled or not isinstance(self.target, ServerTarget):
            return False
        attempt_id = self.tunnel.current_attempt_id
        if attempt_id is None or self._tracker is None or self.notifier is None:
            return False
        return await self.notifier.schedule(
            self._tracker.expires_at, self._tracker.authenticated_at, attempt_id
        )

    async def wait_for_notifications(self) -> bool:
        """Wait until expiry notifications of the last connect are settled.

        Scheduling runs beside the connect path, since it may ask the
        user for consent first.

        Returns:
            True if notifications were scheduled
        """
        task = self._scheduling_task
        if task is None:
            return False
        await asyncio.wait([task])
        return not task.cancelled() and task.exception() is None and task.result()

    def _start_scheduling(self, expires_at: datetime, authenticated_at: datetime | None, attempt_id: UUID) -> None:
        self._cancel_scheduling()
        task = asyncio.get_running_loop().create_task(
            self.notifier.attempt_scheduling(expires_at, authenticated_at, attempt_id)
        )
        task.add_done_callback(_log_scheduling_error)
        self._scheduling_task = task

    def _cancel_scheduling(self) -> None:
        if self._scheduling_task is not None:
            self._scheduling_task.cancel()
            self._scheduling_task = None

    # Session status

    def _start_tracker(self, expires_at: datetime, authenticated_at: datetime | None) -> None:
        if self._tracker is not None:
            self._tracker.stop()
        self._tracker = SessionExpiryTracker(
            expires_at, authenticated_at, self._on_session_status, self.policy, self.clock
        )
        self._tracker.start()

    def _on_session_status(self, status: SessionStatus) -> None:
        old = self._snapshot.session_status
        self._dispatch(SessionStatusChanged(status))
        if isinstance(old, (ValidFor, AboutToExpire)) and isinstance(status, Expired):
            logger.info("Session expired")
            self._emit(SessionExpired())

    # Tunnel status

    def _on_tunnel_status(self, status: TunnelStatus) -> None:
        enabled = self.tunnel.is_enabled
        self._dispatch(TunnelStatusChanged(status, enabled))

        if status == TunnelStatus.CONNECTED:
            if self._connected_since is None:
                self._connected_since = self.clock()
            if self._snapshot.info_expanded:
                self._start_info_task()
        elif status == TunnelStatus.CONNECTING:
            should_ask = self._should_ask_for_password_on_reconnect and not self._is_beginning_static_flow
            self._emit(DidBeginConnecting(self._credentials, should_ask))
        elif status in (TunnelStatus.DISCONNECTED, TunnelStatus.INVALID):
            self._connected_since = None
            self._cancel_info_task()
            if not enabled and self.state == InternalState.ENABLED:
                logger.warning("Tunnel went down, ending the session")
                self._set_state(InternalState.IDLE)
                self._end_session()
                self._connecting_profile = None
                self._disconnect_report = None

    # Connection info

    async def expand_connection_info(self) -> None:
        """Show connection telemetry; only while connected."""
        if self._snapshot.info_expanded:
            return
        if self._snapshot.tunnel_status not in (TunnelStatus.CONNECTED, TunnelStatus.REASSERTING):
            return
        self._dispatch(ConnectionInfoChanged(expanded=True))
        await self._refresh_connection_info()

    def collapse_connection_info(self) -> None:
        self._cancel_info_task()
        self._dispatch(ConnectionInfoChanged(expanded=False))

    async def toggle_connection_info(self) -> None:
        if self._snapshot.info_expanded:
            self.collapse_connection_info()
        else:
            await self.expand_connection_info()

    async def _refresh_connection_info(self) -> None:
        if isinstance(self.target, StaticConfigTarget):
            profile_name = self.target.name
        else:
            profile_name = self._connecting_profile.name() if self._connecting_profile else None
        info = await self.info_provider(profile_name, self._connected_since)
        if self._snapshot.info_expanded:
            self._dispatch(ConnectionInfoChanged(expanded=True, info=info))

    def _start_info_task(self) -> None:
        self._cancel_info_task()
        self._info_task = asyncio.get_running_loop().create_task(self._refresh_connection_info())

    def _cancel_info_task(self) -> None:
        if self._info_task is not None:
            self._info_task.cancel()
            self._info_task = None

    def close(self) -> None:
        """Stop listening to the tunnel and stop timers; the tunnel keeps running."""
        self._unsubscribe_tunnel()
        self._unsubscribe_tunnel = lambda: None
        self._cancel_info_task()
        self._cancel_scheduling()
        if self._tracker is not None:
            self._tracker.stop()
            self._tracker = None
