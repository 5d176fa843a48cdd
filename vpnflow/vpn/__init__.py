"""Local tunnel control via openvpn and wg-quick."""

from .base import TunnelController, TunnelError, TunnelStatus
from .config_manager import ConfigManager
from .controller import SystemTunnelController
from .status import ConnectionInfo, get_connection_info

__all__ = [
    "TunnelController",
    "TunnelError",
    "TunnelStatus",
    "ConfigManager",
    "SystemTunnelController",
    "ConnectionInfo",
    "get_connection_info",
]
