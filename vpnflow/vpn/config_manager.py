"""Private on-disk files backing a running tunnel."""

import logging
import os
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel, ValidationError

from ..api.models import OpenVPNConfig, WireGuardConfig
from ..utils.credentials import Credentials
from ..utils.preferences import write_atomically

logger = logging.getLogger(__name__)


class TunnelState(BaseModel):
    """What is needed to find and stop a running tunnel from a new process."""

    attempt_id: UUID
    kind: str
    config_path: Path
    pid_path: Path | None = None
    log_path: Path | None = None
    interface: str | None = None
    should_disable_on_error: bool = True
    prevent_automatic_reconnect: bool = False


class ConfigManager:
    """Manage tunnel configuration files for a running tunnel.

    Configurations hold key material, so they are written with 0600
    permissions and removed as soon as the tunnel is disabled.
    """

    # wg-quick names the interface after the file; keep it under 16 chars
    WIREGUARD_INTERFACE = "vpnflow0"

    def __init__(self, runtime_dir: Path):
        """Initialize config manager.

        Args:
            runtime_dir: Directory holding configs, pid files and state
        """
        self.runtime_dir = runtime_dir

    @property
    def state_path(self) -> Path:
        return self.runtime_dir / "tunnel.json"

    def write_config(
        self,
        config: OpenVPNConfig | WireGuardConfig,
        attempt_id: UUID,
        credentials: Credentials | None = None,
        *,
        should_disable_on_error: bool = True,
        prevent_automatic_reconnect: bool = False,
    ) -> TunnelState:
        """Write a tunnel configuration and the state describing it.

        Args:
            config: OpenVPN or WireGuard configuration
            attempt_id: Connection attempt the tunnel belongs to
            credentials: Optional user name/password for OpenVPN

        Returns:
            The persisted tunnel state
        """
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.runtime_dir, 0o700)

        if isinstance(config, WireGuardConfig):
            config_path = self.runtime_dir / f"{self.WIREGUARD_INTERFACE}.conf"
            write_atomically(config_path, config.text)
            state = TunnelState(
                attempt_id=attempt_id,
                kind="wireguard",
                config_path=config_path,
                interface=self.WIREGUARD_INTERFACE,
                should_disable_on_error=should_disable_on_error,
                prevent_automatic_reconnect=prevent_automatic_reconnect,
            )
        else:
            config_path = self.runtime_dir / "openvpn.ovpn"
            write_atomically(config_path, config.text)
            if credentials is not None:
                # username on first line, password on second
                write_atomically(self.auth_path, f"{credentials.username}\n{credentials.password}\n")
            state = TunnelState(
                attempt_id=attempt_id,
                kind="openvpn",
                config_path=config_path,
                pid_path=self.runtime_dir / "openvpn.pid",
                log_path=self.runtime_dir / "openvpn.log",
                should_disable_on_error=should_disable_on_error,
                prevent_automatic_reconnect=prevent_automatic_reconnect,
            )

        write_atomically(self.state_path, state.model_dump_json(indent=2))
        return state

    @property
    def auth_path(self) -> Path:
        return self.runtime_dir / "openvpn.auth"

    def load_state(self) -> TunnelState | None:
        """Load the state of the running tunnel, if any."""
        if not self.state_path.exists():
            return None
        try:
            return TunnelState.model_validate_json(self.state_path.read_text())
        except (OSError, ValidationError) as e:
            logger.error("Ignoring unreadable tunnel state %s: %s", self.state_path, e)
            return None

    def remove(self) -> None:
        """Delete config, credentials and state files."""
        state = self.load_state()
        paths = [self.state_path, self.auth_path]
        if state is not None:
            paths += [state.config_path, state.pid_path, state.log_path]
        for path in paths:
            if path is not None:
                path.unlink(missing_ok=True)

    def read_pid(self, state: TunnelState) -> int | None:
        """Read the OpenVPN daemon's pid."""
        if state.pid_path is None or not state.pid_path.exists():
            return None
        try:
            return int(state.pid_path.read_text().strip())
        except ValueError:
            return None

    def log_contains(self, state: TunnelState, marker: str) -> bool:
        """Check if the tunnel log contains a marker line."""
        if state.log_path is None or not state.log_path.exists():
            return False
        return marker in state.log_path.read_text(errors="replace")
