"""
Client address resolution and classification
Only the caller's own public address may ever be probed
"""

import ipaddress
from typing import Iterable, Mapping, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

PRIVATE_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
]

_IPV4_HOST_MASK = 0xFFFFFF00
# Keep the top 48 bits of an IPv6 address
_IPV6_PREFIX_MASK = ((1 << 48) - 1) << 80


def parse_ip(value: Optional[str]) -> Optional[IPAddress]:
    """
    Parse an IP literal, returning None when it is not one

    IPv4-mapped IPv6 literals are unwrapped to their IPv4 address.
    """
    if not value:
        return None
    try:
        ip = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def is_trusted_proxy(peer_address: Optional[str], trusted_proxies: Iterable[IPNetwork]) -> bool:
    ip = parse_ip(peer_address)
    if ip is None:
        return False
    return any(ip in network for network in trusted_proxies)


def resolve_client_address(
    headers: Mapping[str, str],
    peer_address: Optional[str],
    trusted_proxies: Iterable[IPNetwork] = ()
) -> Optional[str]:
    """
    Determine the caller's address

    Forwarding headers are honored only when the connection peer is inside
    one of trusted_proxies; any other peer is the caller itself. For a
    trusted peer the precedence is: first IP literal in X-Forwarded-For,
    then X-Real-IP, then the peer. Candidates that are not IP literals are
    skipped. The returned literal is raw; anonymize it before logging.
    """
    if not is_trusted_proxy(peer_address, trusted_proxies):
        if parse_ip(peer_address) is not None:
            return peer_address.strip()
        return None

    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        for candidate in forwarded.split(","):
            candidate = candidate.strip()
            if parse_ip(candidate) is not None:
                return candidate

    real_ip = _header(headers, "X-Real-IP")
    if real_ip and parse_ip(real_ip) is not None:
        return real_ip.strip()

    return peer_address.strip()


def is_private(address: str) -> bool:
    """True for loopback, link-local and RFC 1918 / ULA ranges"""
    ip = parse_ip(address)
    if ip is None:
        return False
    return any(ip in network for network in PRIVATE_NETWORKS)


def ip_version(address: str) -> int:
    ip = parse_ip(address)
    if ip is None:
        raise ValueError(f"Not an IP literal: {address!r}")
    return ip.version


def anonymize(address: str) -> str:
    """
    Truncate an address before it is persisted

    IPv4 keeps the first three octets, IPv6 keeps the top 48 bits.
    Anything that is not an IP literal is returned unchanged.
    """
    ip = parse_ip(address)
    if ip is None:
        return address
    if ip.version == 4:
        return str(ipaddress.IPv4Address(int(ip) & _IPV4_HOST_MASK))
    return str(ipaddress.IPv6Address(int(ip) & _IPV6_PREFIX_MASK))


def format_host_port(host: str, port: int) -> str:
    """host:port, bracketing IPv6 literals"""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
