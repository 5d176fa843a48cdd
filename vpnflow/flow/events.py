"""Events published by a connection flow to its subscribers."""

from dataclasses import dataclass
from typing import Any, Union

from ..api.models import Profile
from ..utils.credentials import Credentials
from .storage import ConnectionAttemptRecord


@dataclass(frozen=True)
class SignalChanged:
    """A derived signal took a new value.

    name is one of the Signals field names.
    """

    name: str
    value: Any


@dataclass(frozen=True)
class ProfilesFound:
    profiles: tuple[Profile, ...]


@dataclass(frozen=True)
class WillAutoSelectProfile:
    profile_id: str


@dataclass(frozen=True)
class WillAttemptToConnect:
    record: ConnectionAttemptRecord


@dataclass(frozen=True)
class DidBeginConnecting:
    """The tunnel started connecting.

    should_ask_for_password is set when a static config that asks for
    its password every time is reconnecting on its own.
    """

    credentials: Credentials | None
    should_ask_for_password: bool


@dataclass(frozen=True)
class SessionExpired:
    """The session went from valid to expired while being tracked."""

    pass


FlowEvent = Union[
    SignalChanged,
    ProfilesFound,
    WillAutoSelectProfile,
    WillAttemptToConnect,
    DidBeginConnecting,
    SessionExpired,
]
