"""Connection flow state and the signals derived from it.

Everything here is pure: reduce() takes a snapshot and an input event and
returns the next snapshot together with the derived signals that changed.
The ConnectionFlow feeds it and publishes the changes.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Union

from ..api.models import Profile
from ..vpn.base import TunnelStatus
from ..vpn.status import ConnectionInfo
from .errors import InvalidTransition
from .events import SignalChanged
from .session import SessionStatus


class InternalState(Enum):
    """What the flow is doing."""

    IDLE = "idle"
    GETTING_SERVER_INFO = "getting_server_info"
    GETTING_PROFILES = "getting_profiles"
    CONFIGURING = "configuring"
    ENABLE_REQUESTED = "enable_requested"
    DISABLE_REQUESTED = "disable_requested"
    ENABLED = "enabled"


S = InternalState

TRANSITIONS: dict[InternalState, frozenset[InternalState]] = {
    S.IDLE: frozenset({S.GETTING_SERVER_INFO, S.CONFIGURING, S.ENABLE_REQUESTED, S.ENABLED}),
    S.GETTING_SERVER_INFO: frozenset({S.GETTING_PROFILES, S.CONFIGURING, S.IDLE}),
    S.GETTING_PROFILES: frozenset({S.CONFIGURING, S.IDLE}),
    S.CONFIGURING: frozenset({S.ENABLE_REQUESTED, S.IDLE}),
    S.ENABLE_REQUESTED: frozenset({S.ENABLED, S.IDLE}),
    S.ENABLED: frozenset({S.DISABLE_REQUESTED, S.IDLE}),
    S.DISABLE_REQUESTED: frozenset({S.IDLE, S.ENABLED}),
}

NETWORK_STATES = frozenset({S.GETTING_SERVER_INFO, S.GETTING_PROFILES, S.CONFIGURING})


def check_transition(old: InternalState, new: InternalState) -> None:
    """Raise InvalidTransition unless old -> new is a defined edge."""
    if old != new and new not in TRANSITIONS[old]:
        raise InvalidTransition(f"{old.value} -> {new.value}")


class FlowStatus(Enum):
    NOT_CONNECTED = "Not connected"
    GETTING_SERVER_INFO = "Getting server info"
    GETTING_PROFILES = "Getting profiles"
    CONFIGURING = "Configuring"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTING = "Disconnecting"
    RECONNECTING = "Reconnecting"


@dataclass(frozen=True)
class NoProfilesAvailable:
    def __str__(self) -> str:
        return "No profiles available"


StatusDetail = Union[NoProfilesAvailable, SessionStatus, None]


@dataclass(frozen=True)
class VPNToggleState:
    is_enabled: bool
    is_on: bool


class ControlKind(Enum):
    NONE = "none"
    PROFILE_SELECTOR = "profile_selector"
    RENEW_SESSION_BUTTON = "renew_session_button"
    SET_CREDENTIALS_BUTTON = "set_credentials_button"
    SPINNER = "spinner"


@dataclass(frozen=True)
class AdditionalControl:
    kind: ControlKind = ControlKind.NONE
    # Only set for the profile selector
    profiles: tuple[Profile, ...] = ()


class InfoVisibility(Enum):
    HIDDEN = "hidden"
    COLLAPSED = "collapsed"
    EXPANDED = "expanded"


@dataclass(frozen=True)
class ConnectionInfoState:
    visibility: InfoVisibility = InfoVisibility.HIDDEN
    info: ConnectionInfo | None = None


@dataclass(frozen=True)
class FlowSnapshot:
    """Everything the derived signals depend on."""

    is_server_target: bool = True
    state: InternalState = InternalState.IDLE
    tunnel_status: TunnelStatus = TunnelStatus.INVALID
    tunnel_enabled: bool = False
    profiles: tuple[Profile, ...] | None = None
    session_status: SessionStatus | None = None
    info_expanded: bool = False
    connection_info: ConnectionInfo | None = None


@dataclass(frozen=True)
class Signals:
    """User-visible values derived from a FlowSnapshot."""

    status: FlowStatus = FlowStatus.NOT_CONNECTED
    status_detail: StatusDetail = None
    vpn_toggle: VPNToggleState = field(default_factory=lambda: VPNToggleState(True, False))
    additional_control: AdditionalControl = field(default_factory=AdditionalControl)
    connection_info_state: ConnectionInfoState = field(default_factory=ConnectionInfoState)
    can_go_back: bool = True


# Input events


@dataclass(frozen=True)
class StateChanged:
    state: InternalState
    tunnel_enabled: bool


@dataclass(frozen=True)
class TunnelStatusChanged:
    status: TunnelStatus
    tunnel_enabled: bool


@dataclass(frozen=True)
class ProfilesChanged:
    profiles: tuple[Profile, ...] | None


@dataclass(frozen=True)
class SessionStatusChanged:
    status: SessionStatus | None


@dataclass(frozen=True)
class ConnectionInfoChanged:
    expanded: bool
    info: ConnectionInfo | None = None


InputEvent = Union[StateChanged, TunnelStatusChanged, ProfilesChanged, SessionStatusChanged, ConnectionInfoChanged]


def derive_status(s: FlowSnapshot) -> FlowStatus:
    if s.state == S.GETTING_SERVER_INFO:
        return FlowStatus.GETTING_SERVER_INFO
    if s.state == S.GETTING_PROFILES:
        return FlowStatus.GETTING_PROFILES
    if s.state == S.CONFIGURING:
        return FlowStatus.CONFIGURING
    tunnel = s.tunnel_status
    if tunnel in (TunnelStatus.INVALID, TunnelStatus.DISCONNECTED):
        if s.state == S.ENABLE_REQUESTED:
            return FlowStatus.CONFIGURING
        return FlowStatus.NOT_CONNECTED
    return {
        TunnelStatus.CONNECTING: FlowStatus.CONNECTING,
        TunnelStatus.CONNECTED: FlowStatus.CONNECTED,
        TunnelStatus.REASSERTING: FlowStatus.RECONNECTING,
        TunnelStatus.DISCONNECTING: FlowStatus.DISCONNECTING,
    }[tunnel]


def derive_status_detail(s: FlowSnapshot) -> StatusDetail:
    if s.state in NETWORK_STATES:
        return None
    if s.is_server_target and s.state == S.IDLE and s.profiles is not None and not s.profiles:
        return NoProfilesAvailable()
    if s.state == S.ENABLED and s.session_status is not None:
        return s.session_status
    return None


def derive_vpn_toggle(s: FlowSnapshot) -> VPNToggleState:
    is_enabled = (
        s.state in (S.IDLE, S.GETTING_SERVER_INFO, S.ENABLED)
        or s.tunnel_status == TunnelStatus.CONNECTING
    )
    if s.state in NETWORK_STATES or s.state == S.ENABLE_REQUESTED:
        is_on = True
    elif s.state == S.DISABLE_REQUESTED:
        is_on = False
    else:
        is_on = s.tunnel_enabled
    return VPNToggleState(is_enabled=is_enabled, is_on=is_on)


def derive_additional_control(s: FlowSnapshot) -> AdditionalControl:
    if s.info_expanded:
        # Room for the expanded connection info
        return AdditionalControl()
    if s.state in NETWORK_STATES:
        return AdditionalControl(ControlKind.SPINNER)
    if (
        s.state == S.ENABLED
        and s.session_status is not None
        and s.session_status.should_show_renew_session_button
    ):
        return AdditionalControl(ControlKind.RENEW_SESSION_BUTTON)
    if s.state == S.IDLE and s.profiles is not None and len(s.profiles) > 1:
        return AdditionalControl(ControlKind.PROFILE_SELECTOR, s.profiles)
    if s.tunnel_status in (TunnelStatus.CONNECTING, TunnelStatus.DISCONNECTING, TunnelStatus.REASSERTING):
        return AdditionalControl(ControlKind.SPINNER)
    if s.tunnel_status == TunnelStatus.DISCONNECTED and not s.is_server_target:
        return AdditionalControl(ControlKind.SET_CREDENTIALS_BUTTON)
    return AdditionalControl()


def derive_connection_info_state(s: FlowSnapshot) -> ConnectionInfoState:
    if s.tunnel_status not in (TunnelStatus.CONNECTED, TunnelStatus.REASSERTING):
        return ConnectionInfoState(InfoVisibility.HIDDEN)
    if s.info_expanded and s.connection_info is not None:
        return ConnectionInfoState(InfoVisibility.EXPANDED, s.connection_info)
    return ConnectionInfoState(InfoVisibility.COLLAPSED)


def derive(snapshot: FlowSnapshot) -> Signals:
    """Compute all user-visible signals of a snapshot."""
    return Signals(
        status=derive_status(snapshot),
        status_detail=derive_status_detail(snapshot),
        vpn_toggle=derive_vpn_toggle(snapshot),
        additional_control=derive_additional_control(snapshot),
        connection_info_state=derive_connection_info_state(snapshot),
        can_go_back=snapshot.state == S.IDLE,
    )


def apply(snapshot: FlowSnapshot, event: InputEvent) -> FlowSnapshot:
    """Return the snapshot updated with an input event."""
    if isinstance(event, StateChanged):
        check_transition(snapshot.state, event.state)
        return replace(snapshot, state=event.state, tunnel_enabled=event.tunnel_enabled)
    if isinstance(event, TunnelStatusChanged):
        if event.status == TunnelStatus.DISCONNECTED:
            return replace(
                snapshot,
                tunnel_status=event.status,
                tunnel_enabled=event.tunnel_enabled,
                info_expanded=False,
                connection_info=None,
            )
        return replace(snapshot, tunnel_status=event.status, tunnel_enabled=event.tunnel_enabled)
    if isinstance(event, ProfilesChanged):
        return replace(snapshot, profiles=event.profiles)
    if isinstance(event, SessionStatusChanged):
        return replace(snapshot, session_status=event.status)
    if isinstance(event, ConnectionInfoChanged):
        return replace(snapshot, info_expanded=event.expanded, connection_info=event.info)
    raise TypeError(f"Unknown event: {event!r}")


def diff(old: Signals, new: Signals) -> list[SignalChanged]:
    """Signals that differ between two derivations, in field order."""
    return [
        SignalChanged(f.name, getattr(new, f.name))
        for f in fields(Signals)
        if getattr(old, f.name) != getattr(new, f.name)
    ]


def reduce(snapshot: FlowSnapshot, event: InputEvent) -> tuple[FlowSnapshot, list[SignalChanged]]:
    """Apply an input event and report the derived signals that changed.

    Raises:
        InvalidTransition: if the event moves the internal state along an
            undefined edge; the snapshot is left as it was
    """
    new_snapshot = apply(snapshot, event)
    return new_snapshot, diff(derive(snapshot), derive(new_snapshot))
