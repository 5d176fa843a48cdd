"""Manage VPN connections: profiles, tunnels, sessions and notifications."""

__version__ = "0.1.0"
