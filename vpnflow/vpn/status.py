"""Connection telemetry shown for an active tunnel."""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import httpx


@dataclass(frozen=True)
class ConnectionInfo:
    """Details about the active VPN connection."""

    profile_name: str | None = None
    public_ip: str | None = None
    country: str | None = None
    city: str | None = None
    connected_since: datetime | None = None
    bytes_received: int | None = None
    bytes_sent: int | None = None

    @property
    def duration(self) -> str | None:
        """Time since the tunnel came up, as H:MM:SS."""
        if self.connected_since is None:
            return None
        seconds = int((datetime.now(timezone.utc) - self.connected_since).total_seconds())
        hours, rest = divmod(max(seconds, 0), 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours}:{minutes:02d}:{seconds:02d}"

    def __str__(self) -> str:
        parts = [f"Profile: {self.profile_name or 'unknown'}"]
        if self.city or self.country:
            parts.append(f"({self.city or self.country})")
        if self.public_ip:
            parts.append(f"| IP: {self.public_ip}")
        if self.duration:
            parts.append(f"| Up: {self.duration}")
        return " ".join(parts)


async def get_public_ip() -> str | None:
    """Get current public IP address."""
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            # Use a simple IP echo service
            response = await client.get("https://api.ipify.org")
            if response.status_code == 200:
                return response.text.strip()
    except httpx.HTTPError:
        pass
    return None


async def get_ip_info(ip: str) -> dict | None:
    """Get geolocation info for an IP address."""
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(f"https://ipinfo.io/{ip}/json")
            if response.status_code == 200:
                return response.json()
    except (httpx.HTTPError, ValueError):
        pass
    return None


def read_interface_counters(interface: str, sys_root: Path = Path("/sys/class/net")) -> tuple[int, int] | None:
    """Read (received, sent) byte counters of a network interface.

    Only available on Linux; returns None elsewhere.
    """
    stats = sys_root / interface / "statistics"
    try:
        received = int((stats / "rx_bytes").read_text().strip())
        sent = int((stats / "tx_bytes").read_text().strip())
    except (OSError, ValueError):
        return None
    return received, sent


async def get_connection_info(
    profile_name: str | None = None,
    connected_since: datetime | None = None,
    interface: str | None = None,
) -> ConnectionInfo:
    """Collect telemetry for the active connection."""
    public_ip = await get_public_ip()
    city = None
    country = None

    if public_ip:
        ip_info = await get_ip_info(public_ip)
        if ip_info:
            city = ip_info.get("city")
            country = ip_info.get("country")

    counters = read_interface_counters(interface) if interface else None

    return ConnectionInfo(
        profile_name=profile_name,
        public_ip=public_ip,
        country=country,
        city=city,
        connected_since=connected_since,
        bytes_received=counters[0] if counters else None,
        bytes_sent=counters[1] if counters else None,
    )
