"""Target URL policy for source pages.

Source URLs come from operator-edited rule sets and manual overrides, so the
fetcher checks every URL here before the browser is pointed at it. Internal
addresses are refused to keep the fetcher from being used to reach them.
"""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from urllib.parse import urlparse

from bloodwatch.config.settings import URLPolicyConfig

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})
LOCAL_SUFFIXES = (".local", ".localhost", ".internal")


@dataclass(frozen=True)
class URLValidationResult:
    allowed: bool
    reason: str

    @classmethod
    def ok(cls) -> URLValidationResult:
        return cls(allowed=True, reason="OK")

    @classmethod
    def rejected(cls, reason: str) -> URLValidationResult:
        return cls(allowed=False, reason=reason)


def _blocked_network(addr: IPAddress) -> str | None:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return next((str(net) for net in BLOCKED_NETWORKS if addr in net), None)


def _is_local_hostname(hostname: str) -> bool:
    return hostname in LOCAL_HOSTNAMES or hostname.endswith(LOCAL_SUFFIXES)


def _addresses_for(hostname: str) -> list[IPAddress]:
    """IP literals are returned as-is; anything else goes through DNS.

    Raises:
        socket.gaierror: The hostname does not resolve.
    """
    try:
        return [ipaddress.ip_address(hostname)]
    except ValueError:
        pass
    infos = socket.getaddrinfo(hostname, None)
    # Scoped IPv6 results carry a "%iface" suffix
    return [ipaddress.ip_address(info[4][0].split("%", 1)[0]) for info in infos]


def validate_target_url(url: str, policy: URLPolicyConfig) -> URLValidationResult:
    """Decide whether the fetcher may contact ``url``.

    A URL is refused when its scheme is not allowed, it has no host, its
    host is a local name, or any address it resolves to sits in a blocked
    network.
    """
    parsed = urlparse(url.strip())

    if parsed.scheme not in policy.allowed_schemes:
        return URLValidationResult.rejected(f"Scheme '{parsed.scheme}' not allowed")

    hostname = (parsed.hostname or "").rstrip(".")
    if not hostname:
        return URLValidationResult.rejected("No hostname in URL")

    if policy.block_local_hostnames and _is_local_hostname(hostname):
        return URLValidationResult.rejected(f"Hostname '{hostname}' is blocked")

    if not policy.block_private_ips:
        return URLValidationResult.ok()

    try:
        addresses = _addresses_for(hostname)
    except socket.gaierror:
        return URLValidationResult.rejected(f"Cannot resolve hostname '{hostname}'")

    for addr in addresses:
        network = _blocked_network(addr)
        if network:
            return URLValidationResult.rejected(f"IP {addr} is in private range {network}")
    return URLValidationResult.ok()
