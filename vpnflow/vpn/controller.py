"""Tunnel controller running openvpn or wg-quick as subprocesses."""

import asyncio
import logging
import os
import signal
from typing import Callable
from uuid import UUID

from ..api.models import OpenVPNConfig, WireGuardConfig
from ..utils.credentials import Credentials
from .base import StatusListener, TunnelError, TunnelStatus
from .config_manager import ConfigManager, TunnelState

logger = logging.getLogger(__name__)


async def _run_command(*argv: str, timeout: float = 30.0, input: str | None = None) -> str:
    """Execute a command and return its stdout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise TunnelError(f"{argv[0]} not found - is it installed?") from None

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input.encode() if input is not None else None), timeout=timeout
        )
    except asyncio.TimeoutError:
        proc.kill()
        raise TunnelError(f"{argv[0]} timed out") from None

    if proc.returncode != 0:
        raise TunnelError(f"{argv[0]} failed: {stderr.decode(errors='replace').strip()}")
    return stdout.decode(errors="replace").strip()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SystemTunnelController:
    """Run a tunnel with the system's openvpn or wg-quick.

    Tunnel files live in a runtime directory, so a controller created in
    a new process sees a tunnel enabled by an earlier one.
    """

    OPENVPN = "openvpn"
    WG_QUICK = "wg-quick"
    WG = "wg"
    READY_MARKER = "Initialization Sequence Completed"

    def __init__(self, config_manager: ConfigManager, poll_interval: float = 1.0):
        self.config_manager = config_manager
        self.poll_interval = poll_interval
        self._status = TunnelStatus.INVALID
        self._listeners: list[StatusListener] = []
        self._monitor: asyncio.Task | None = None

    @property
    def is_enabled(self) -> bool:
        return self.config_manager.load_state() is not None

    @property
    def current_attempt_id(self) -> UUID | None:
        state = self.config_manager.load_state()
        return state.attempt_id if state else None

    @property
    def status(self) -> TunnelStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_status(self, status: TunnelStatus) -> None:
        if status == self._status:
            return
        logger.debug("Tunnel status %s -> %s", self._status.value, status.value)
        self._status = status
        for listener in list(self._listeners):
            listener(status)

    async def start(self) -> None:
        """Pick up a tunnel enabled by an earlier process."""
        state = self.config_manager.load_state()
        if state is None:
            self._set_status(TunnelStatus.DISCONNECTED)
            return
        self._set_status(await self._check_liveness(state))
        self._start_monitor()

    async def enable(
        self,
        config: OpenVPNConfig | WireGuardConfig,
        attempt_id: UUID,
        credentials: Credentials | None = None,
        *,
        should_disable_on_error: bool = True,
        prevent_automatic_reconnect: bool = False,
    ) -> None:
        """Bring the tunnel up with the given configuration."""
        if self.is_enabled:
            await self.disable()

        state = self.config_manager.write_config(
            config,
            attempt_id,
            credentials,
            should_disable_on_error=should_disable_on_error,
            prevent_automatic_reconnect=prevent_automatic_reconnect,
        )
        self._set_status(TunnelStatus.CONNECTING)
        try:
            if state.kind == "wireguard":
                await _run_command(self.WG_QUICK, "up", str(state.config_path))
            else:
                await _run_command(*self._openvpn_args(state, credentials is not None))
        except TunnelError:
            self.config_manager.remove()
            self._set_status(TunnelStatus.DISCONNECTED)
            raise

        logger.info("Tunnel enabled (%s, attempt %s)", state.kind, attempt_id)
        self._start_monitor()

    def _openvpn_args(self, state: TunnelState, has_credentials: bool) -> list[str]:
        args = [
            self.OPENVPN,
            "--config", str(state.config_path),
            "--daemon", "vpnflow",
            "--writepid", str(state.pid_path),
            "--log", str(state.log_path),
        ]
        if has_credentials:
            args += ["--auth-user-pass", str(self.config_manager.auth_path), "--auth-nocache"]
        if state.should_disable_on_error:
            args += ["--auth-retry", "none"]
        if state.prevent_automatic_reconnect:
            args += ["--connect-retry-max", "1"]
        return args

    async def disable(self) -> None:
        """Take the tunnel down and remove its files."""
        state = self.config_manager.load_state()
        if state is None:
            self._set_status(TunnelStatus.DISCONNECTED)
            return

        self._set_status(TunnelStatus.DISCONNECTING)
        await self._stop_monitor()
        try:
            if state.kind == "wireguard":
                await _run_command(self.WG_QUICK, "down", str(state.config_path))
            else:
                pid = self.config_manager.read_pid(state)
                if pid is not None and _pid_alive(pid):
                    os.kill(pid, signal.SIGTERM)
        finally:
            self.config_manager.remove()
            self._set_status(TunnelStatus.DISCONNECTED)
        logger.info("Tunnel disabled (attempt %s)", state.attempt_id)

    async def _check_liveness(self, state: TunnelState) -> TunnelStatus:
        if state.kind == "wireguard":
            try:
                await _run_command(self.WG, "show", state.interface or "", timeout=5.0)
            except TunnelError:
                return TunnelStatus.DISCONNECTED
            return TunnelStatus.CONNECTED

        pid = self.config_manager.read_pid(state)
        if pid is None:
            # Daemon has not written its pid yet
            return TunnelStatus.CONNECTING
        if not _pid_alive(pid):
            return TunnelStatus.DISCONNECTED
        if self.config_manager.log_contains(state, self.READY_MARKER):
            return TunnelStatus.CONNECTED
        return TunnelStatus.CONNECTING

    def _start_monitor(self) -> None:
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.create_task(self._monitor_loop())

    async def _stop_monitor(self) -> None:
        task, self._monitor = self._monitor, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _monitor_loop(self) -> None:
        while True:
            state = self.config_manager.load_state()
            if state is None:
                self._set_status(TunnelStatus.DISCONNECTED)
                return
            status = await self._check_liveness(state)
            if status == TunnelStatus.DISCONNECTED:
                logger.warning("Tunnel went down unexpectedly")
                self.config_manager.remove()
                self._set_status(TunnelStatus.DISCONNECTED)
                return
            if self._status in (TunnelStatus.CONNECTED, TunnelStatus.REASSERTING) and status == TunnelStatus.CONNECTING:
                status = TunnelStatus.REASSERTING
            self._set_status(status)
            await asyncio.sleep(self.poll_interval)

    async def aclose(self) -> None:
        """Stop watching the tunnel; the tunnel itself keeps running."""
        await self._stop_monitor()


async def generate_key_pair() -> tuple[str, str]:
    """Make a WireGuard key pair with wg genkey and wg pubkey.

    Returns:
        (private_key, public_key)
    """
    private_key = await _run_command(SystemTunnelController.WG, "genkey")
    public_key = await _run_command(SystemTunnelController.WG, "pubkey", input=private_key)
    return private_key, public_key
