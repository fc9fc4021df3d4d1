"""Device and address metadata shown alongside sessions and login history."""
from __future__ import annotations

import ipaddress
from collections.abc import Sequence
from dataclasses import dataclass

UNKNOWN_BROWSER = "Unknown Browser"
UNKNOWN_OS = "Unknown OS"
UNKNOWN_DEVICE = "Unknown Device"

# Order matters: Edge and Opera advertise "Chrome", Chrome advertises "Safari".
_BROWSER_MARKERS: tuple[tuple[str, str], ...] = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)

_OS_MARKERS: tuple[tuple[str, str], ...] = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac OS", "macOS"),
    ("Linux", "Linux"),
)


@dataclass(frozen=True, slots=True)
class DeviceContext:
    """Where a request came from."""

    ip_address: str
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    browser: str
    os: str
    device: str


def parse_user_agent(user_agent: str | None) -> DeviceInfo:
    """Return a coarse browser / OS description for ``user_agent``."""

    agent = (user_agent or "").strip()
    if not agent:
        return DeviceInfo(browser=UNKNOWN_BROWSER, os=UNKNOWN_OS, device=UNKNOWN_DEVICE)

    browser = next((name for marker, name in _BROWSER_MARKERS if marker in agent), UNKNOWN_BROWSER)
    os_name = next((name for marker, name in _OS_MARKERS if marker in agent), UNKNOWN_OS)
    return DeviceInfo(browser=browser, os=os_name, device=f"{browser} - {os_name}")


def _parse_address(address: str | None) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if not address:
        return None
    try:
        return ipaddress.ip_address(address.strip())
    except ValueError:
        return None


Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def _is_trusted(address: str, trusted: Sequence[Network]) -> bool:
    parsed = _parse_address(address)
    return parsed is not None and any(parsed in network for network in trusted)


def resolve_client_address(
    peer: str | None,
    forwarded_for: str | None,
    trusted: Sequence[Network],
) -> str:
    """Return the address a request originated from.

    ``X-Forwarded-For`` is only read when the direct peer is a trusted proxy.  The
    chain is walked from the right and the first hop that is not itself a trusted
    proxy wins, so a client cannot choose its own address by prepending entries.
    """

    if not peer:
        return "unknown"
    if not forwarded_for or not _is_trusted(peer, trusted):
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, trusted):
            return hop
    return hops[0] if hops else peer


def describe_location(address: str | None) -> str:
    if address and address.strip().lower() == "localhost":
        return "Localhost"
    parsed = _parse_address(address)
    if parsed is None:
        return "Unknown Location"
    if parsed.is_loopback:
        return "Localhost"
    if parsed.is_private or parsed.is_link_local:
        return "Local Network"
    return "Remote Location"


def mask_address(address: str | None) -> str:
    """Hide the host part of an address: ``203.0.113.7`` becomes ``203.0.113.xxx``."""

    if not address:
        return "Unknown"
    cleaned = address.strip()
    parsed = _parse_address(cleaned)
    if isinstance(parsed, ipaddress.IPv4Address):
        octets = cleaned.split(".")
        return ".".join(octets[:3] + ["xxx"])
    if isinstance(parsed, ipaddress.IPv6Address):
        groups = cleaned.split(":")
        groups[-1] = "xxxx"
        return ":".join(groups)
    return cleaned


__all__ = [
    "DeviceContext",
    "DeviceInfo",
    "describe_location",
    "mask_address",
    "parse_user_agent",
    "resolve_client_address",
]
