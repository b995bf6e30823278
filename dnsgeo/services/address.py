"""
IP address validation and private/reserved classification.
"""

import ipaddress

# Longest textual IPv6 form (IPv4-mapped with full groups)
MAX_ADDRESS_LENGTH = 45

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# Ranges with no meaningful geolocation that the stdlib flags miss
# or only flags on some Python versions.
_EXTRA_NON_ROUTABLE = tuple(
    ipaddress.ip_network(net)
    for net in (
        "0.0.0.0/8",  # "this" network
        "100.64.0.0/10",  # carrier-grade NAT
        "192.0.0.0/24",  # IETF protocol assignments
        "192.0.2.0/24",  # TEST-NET-1
        "198.18.0.0/15",  # benchmarking
        "198.51.100.0/24",  # TEST-NET-2
        "203.0.113.0/24",  # TEST-NET-3
        "224.0.0.0/3",  # multicast, reserved, broadcast
        "fc00::/7",  # unique local
        "fec0::/10",  # site-local (deprecated)
        "fe80::/10",  # link-local
        "ff00::/8",  # multicast
        "2001:db8::/32",  # documentation
        "2001:10::/28",  # ORCHID
        "2002::/16",  # 6to4
    )
)


def parse_ip(ip: object) -> IPAddress | None:
    """Parse textual input into an address, or None if it is not one."""
    if not isinstance(ip, str):
        return None

    text = ip.strip()
    if not text or len(text) > MAX_ADDRESS_LENGTH:
        return None

    try:
        addr = ipaddress.ip_address(text)
    except ValueError:
        return None

    # Zone index ("%eth0") is local to this host
    if isinstance(addr, ipaddress.IPv6Address) and addr.scope_id:
        addr = ipaddress.IPv6Address(text.split("%", 1)[0])
    return addr


def normalize_ip(ip: object) -> str | None:
    """Canonical text form used as cache key (compressed, lowercase IPv6)."""
    addr = parse_ip(ip)
    return str(addr) if addr is not None else None


def is_private_address(addr: IPAddress) -> bool:
    """True for loopback, private, link-local, multicast and reserved ranges."""
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return is_private_address(addr.ipv4_mapped)

    if (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    ):
        return True

    return any(
        addr.version == net.version and addr in net for net in _EXTRA_NON_ROUTABLE
    )
