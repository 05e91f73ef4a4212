#!/usr/bin/env python3
"""
Jellynet LAN Classifier

Decides which networks count as "the LAN". Peers on the LAN are served on
internal addresses and are never subject to remote-access rules.

**Where the LAN Comes From:**
    1. The administrator's ``local_network_subnets`` list, if any entry parses
    2. Otherwise the well-known private and loopback ranges for each enabled
       address family:
       - IPv6: ``::1/128`` (RFC 4291), ``fe80::/10`` (RFC 4291 link local),
         ``fc00::/7`` (RFC 4193 unique local)
       - IPv4: ``127.0.0.0/8``, ``10.0.0.0/8``, ``172.16.0.0/12``,
         ``192.168.0.0/16`` (RFC 1918)

**Exclusions:**
    Entries in the same field prefixed with ``!`` are exclusions. They are
    kept in their own list and only ever subtract from LAN membership at
    query time; they are never merged into the LAN list.

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import ipaddress
from typing import Iterable, List, Sequence

from .network_utils import IPAddress, IPNetwork, subnet_contains, try_parse_subnets
from .utils import get_logger

FALLBACK_IPV6_LAN = (
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
)

FALLBACK_IPV4_LAN = (
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)

logger = get_logger("jellynet.lan")


def build_lan_subnets(local_network_subnets: Iterable[str], ipv4_enabled: bool, ipv6_enabled: bool) -> List[IPNetwork]:
    """
    Parse the configured LAN or fall back to the well-known ranges.

    Args:
        local_network_subnets: Configured LAN strings (``!`` entries ignored)
        ipv4_enabled (bool): Include IPv4 fallback ranges
        ipv6_enabled (bool): Include IPv6 fallback ranges

    Returns:
        List of LAN networks
    """
    lan_subnets = try_parse_subnets(local_network_subnets, negated=False)
    if lan_subnets:
        return lan_subnets

    logger.debug("Using LAN interface addresses as user provided no LAN details.")

    fallback: List[IPNetwork] = []
    if ipv6_enabled:
        fallback.extend(FALLBACK_IPV6_LAN)
    if ipv4_enabled:
        fallback.extend(FALLBACK_IPV4_LAN)
    return fallback


def build_excluded_subnets(local_network_subnets: Iterable[str]) -> List[IPNetwork]:
    """Parse the ``!``-prefixed exclusion entries."""
    return try_parse_subnets(local_network_subnets, negated=True)


def in_any_subnet(address: IPAddress, subnets: Iterable[IPNetwork]) -> bool:
    return any(subnet_contains(subnet, address) for subnet in subnets)


def is_lan_and_not_excluded(address: IPAddress, lan_subnets: Sequence[IPNetwork],
                            excluded_subnets: Sequence[IPNetwork]) -> bool:
    """True if the address is in some LAN subnet and in no excluded subnet."""
    return in_any_subnet(address, lan_subnets) and not in_any_subnet(address, excluded_subnets)


def is_local_address(address: IPAddress, lan_subnets: Sequence[IPNetwork],
                     excluded_subnets: Sequence[IPNetwork], trust_all_ipv6: bool = False) -> bool:
    """
    Local-network classification for a single address.

    An address is local if it is loopback, or if all IPv6 is trusted and it
    is IPv6, or if it is in the LAN and not excluded.

    Example:
        ```python
        lan = [ipaddress.ip_network("10.0.0.0/8")]
        excluded = [ipaddress.ip_network("10.0.5.0/24")]

        is_local_address(ipaddress.ip_address("10.0.1.1"), lan, excluded)  # True
        is_local_address(ipaddress.ip_address("10.0.5.1"), lan, excluded)  # False
        is_local_address(ipaddress.ip_address("127.0.0.1"), [], [])        # True
        ```
    """
    if address.is_loopback:
        return True
    if trust_all_ipv6 and address.version == 6:
        return True
    return is_lan_and_not_excluded(address, lan_subnets, excluded_subnets)


def log_lan_configuration(lan_subnets: Sequence[IPNetwork], excluded_subnets: Sequence[IPNetwork]) -> None:
    """Log the defined LAN, its exclusions and the effective LAN."""
    logger.info(f"Defined LAN addresses: {[str(s) for s in lan_subnets]}")
    logger.info(f"Defined LAN exclusions: {[str(s) for s in excluded_subnets]}")
    logger.info(f"Using LAN addresses: {[str(s) for s in lan_subnets if s not in excluded_subnets]}")
