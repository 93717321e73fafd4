"""
Address classification used in registration payloads and setup.
"""

from __future__ import annotations

import ipaddress
import re

_IPV4_RE = re.compile(r"[0-9]{1,3}(?:\.[0-9]{1,3}){3}")
_IPV6_RE = re.compile(r"[0-9A-Fa-f]{1,4}(?::[0-9A-Fa-f]{1,4}){7}")


def is_ipv4(address: str) -> bool:
    """Four dot-separated groups of 1-3 digits."""
    return bool(_IPV4_RE.fullmatch(address))


def is_ipv6(address: str) -> bool:
    """Eight colon-separated groups of 1-4 hex digits."""
    return bool(_IPV6_RE.fullmatch(address))


def normalize_address(address: str) -> str:
    """Expand an address reported by the socket layer into its full form.

    Compressed IPv6 (``fe80::1``) is exploded to eight groups and
    IPv4-mapped IPv6 is unwrapped. Anything unparsable is returned as is.
    """
    host = address.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return address
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
        return ip.exploded
    return str(ip)


def classify_address(address: str) -> tuple[str, str]:
    """Return ``(ipv4, ipv6)``; the slot that does not match is blank."""
    normalized = normalize_address(address)
    ipv4 = normalized if is_ipv4(normalized) else ""
    ipv6 = normalized if is_ipv6(normalized) else ""
    return ipv4, ipv6


def is_valid_bind_address(address: str) -> bool:
    """Accept any IPv4/IPv6 literal except loopback."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not ip.is_loopback


def is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False
