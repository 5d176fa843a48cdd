"""VPN server API client."""

from .base import ApiOptions, Authorizer, ServerAPI
from .client import ServerAPIClient
from .models import Profile, ServerInfo, ServerTarget, StaticConfigTarget, TunnelConfiguration

__all__ = [
    "ApiOptions",
    "Authorizer",
    "ServerAPI",
    "ServerAPIClient",
    "Profile",
    "ServerInfo",
    "ServerTarget",
    "StaticConfigTarget",
    "TunnelConfiguration",
]
