"""
SSRF guard for outbound delivery targets.

Validation happens on every delivery; results are never cached so a rule
edited to point somewhere private is refused on its next attempt.
"""

import ipaddress
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

ALLOWED_SCHEMES = ("http", "https")

BLOCKED_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


@dataclass(frozen=True)
class UrlValidationResult:
    valid: bool
    reason: Optional[str] = None


def _is_localhost(host: str) -> bool:
    return host == "localhost" or host.endswith(".localhost")


def is_private_address(host: str) -> bool:
    """True when ``host`` is an IP literal inside a blocked range."""
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    return any(address in network for network in BLOCKED_NETWORKS if network.version == address.version)


def validate_target_url(
    url: Optional[str],
    enforce_https: bool = True,
    block_private_networks: bool = True
) -> UrlValidationResult:
    """
    Check a delivery URL against the scheme and private network policy.

    Hostnames are not resolved; only literal addresses and localhost names
    are refused.
    """
    if not url or not str(url).strip():
        return UrlValidationResult(False, "URL required")

    try:
        parts = urlsplit(str(url).strip())
        host = parts.hostname
        # Accessing .port validates the port range
        parts.port
    except ValueError:
        return UrlValidationResult(False, "Invalid URL format")

    if parts.scheme.lower() not in ALLOWED_SCHEMES or not host:
        return UrlValidationResult(False, "Invalid URL format")

    if enforce_https and parts.scheme.lower() != "https":
        return UrlValidationResult(False, "HTTPS required")

    if block_private_networks:
        host = host.lower().rstrip(".")
        if _is_localhost(host):
            return UrlValidationResult(False, "Localhost is not allowed")
        if is_private_address(host):
            return UrlValidationResult(False, "Private IP not allowed")

    return UrlValidationResult(True)
