"""Tunnel controller contract."""

from enum import Enum
from typing import Callable, Protocol
from uuid import UUID

from ..api.models import OpenVPNConfig, WireGuardConfig
from ..utils.credentials import Credentials


class TunnelStatus(Enum):
    """States reported by a tunnel."""

    INVALID = "invalid"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REASSERTING = "reasserting"
    DISCONNECTING = "disconnecting"


class TunnelError(Exception):
    """Error enabling or disabling a tunnel."""

    pass


StatusListener = Callable[[TunnelStatus], None]


class TunnelController(Protocol):
    """Enable/disable a local tunnel and report its status."""

    @property
    def is_enabled(self) -> bool:
        ...

    @property
    def current_attempt_id(self) -> UUID | None:
        ...

    @property
    def status(self) -> TunnelStatus:
        ...

    async def enable(
        self,
        config: OpenVPNConfig | WireGuardConfig,
        attempt_id: UUID,
        credentials: Credentials | None = None,
        *,
        should_disable_on_error: bool = True,
        prevent_automatic_reconnect: bool = False,
    ) -> None:
        ...

    async def disable(self) -> None:
        ...

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register for status changes; returns an unsubscribe callable."""
        ...
