#!/usr/bin/env python3
"""
Jellynet Subnet and Address Utilities

This module contains the pure helper functions used by every other part of
the network engine to turn administrator-supplied strings into addresses
and networks, and to turn addresses back into the canonical strings the
server hands out.

**Understanding Subnet Strings:**
    Administrators write networks in several ways and all of them are
    accepted here:
    - ``192.168.1.0/24`` (address and prefix length)
    - ``192.168.1.0/255.255.255.0`` (address and dotted netmask, IPv4 only)
    - ``192.168.1.20`` (a single host, implies /32 or /128)
    - ``!10.0.5.0/24`` (an exclusion, only honoured in negated parsing mode)

    Parsing returns an ``ipaddress`` *interface* object rather than a plain
    network, so that ``192.168.1.20/24`` keeps both the literal address
    (``.ip``) and the network it belongs to (``.network``). The bind-set
    enforcer relies on the literal address; everything else uses the network.

**Address Families:**
    IPv4 and IPv6 never match each other. ``subnet_contains`` returns False
    for mismatched families instead of raising, which keeps callers simple.

Functions:
    parse_subnet / try_parse_subnet / try_parse_subnets: Subnet parsing
    split_host_port / parse_host / try_parse_host: Host (and port) parsing
    subnet_contains: Family-aware containment test
    host_network: Host-length network for an address
    format_address: Canonical textual form for outward-facing results

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import ipaddress
import re
import socket
from typing import Iterable, List, Optional, Tuple, Union

from .utils import get_logger

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]

IPV4_LOOPBACK = ipaddress.IPv4Address("127.0.0.1")
IPV6_LOOPBACK = ipaddress.IPv6Address("::1")
IPV4_ANY = ipaddress.IPv4Address("0.0.0.0")
IPV6_ANY = ipaddress.IPv6Address("::")
IPV4_BROADCAST = ipaddress.IPv4Address("255.255.255.255")

# Host name: dot separated labels of letters, digits, hyphens and underscores
_HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9_-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9_-]{1,63}(?<!-))*\.?$"
)

logger = get_logger("jellynet.network_utils")


class SubnetParseError(ValueError):
    """Raised when a string cannot be parsed as an address or subnet."""


class HostParseError(ValueError):
    """Raised when a string cannot be parsed or resolved as a host."""


def _strip_scope(text: str) -> str:
    """Remove an IPv6 zone index (``fe80::1%eth0`` -> ``fe80::1``)."""
    return text.split('%', 1)[0]


def parse_subnet(text: str) -> IPInterface:
    """
    Parse an address or subnet string into an ``ipaddress`` interface.

    Args:
        text (str): ``addr/len``, ``addr/netmask`` or a bare address

    Returns:
        IPv4Interface | IPv6Interface: Literal address plus its network

    Raises:
        SubnetParseError: If the string is empty or not a valid subnet

    Example:
        ```python
        subnet = parse_subnet("192.168.1.20/24")
        subnet.ip        # IPv4Address('192.168.1.20')
        subnet.network   # IPv4Network('192.168.1.0/24')

        parse_subnet("fe80::1").network  # IPv6Network('fe80::1/128')
        ```
    """
    if text is None or not text.strip():
        raise SubnetParseError("Subnet string cannot be empty")

    value = text.strip()
    try:
        if '/' in value:
            address_part, _, mask_part = value.partition('/')
            address_part = _strip_scope(address_part.strip().strip('[]'))
            mask_part = mask_part.strip()
            if not mask_part:
                raise SubnetParseError(f"Missing prefix length in subnet: {text}")
            return ipaddress.ip_interface(f"{address_part}/{mask_part}")

        address = ipaddress.ip_address(_strip_scope(value.strip('[]')))
        return ipaddress.ip_interface(f"{address}/{address.max_prefixlen}")

    except ValueError as e:
        if isinstance(e, SubnetParseError):
            raise
        raise SubnetParseError(f"Invalid subnet '{text}': {e}") from e


def try_parse_subnet(text: str) -> Optional[IPInterface]:
    """Non-raising variant of ``parse_subnet``; returns None on failure."""
    try:
        return parse_subnet(text)
    except SubnetParseError:
        return None


def try_parse_subnets(values: Iterable[str], negated: bool = False) -> List[IPNetwork]:
    """
    Parse a list of subnet strings, dropping anything that does not parse.

    Entries prefixed with ``!`` are exclusions. In normal mode they are
    skipped; in negated mode *only* they are parsed (with the ``!``
    removed). This lets the LAN list and the exclusion list share one
    configuration field.

    Args:
        values: Subnet strings from configuration
        negated (bool): Parse exclusion entries instead of inclusion entries

    Returns:
        List of networks in input order, without duplicates
    """
    result: List[IPNetwork] = []
    for raw in values or []:
        if raw is None:
            continue

        entry = raw.strip()
        if not entry:
            continue

        is_exclusion = entry.startswith('!')
        if is_exclusion != negated:
            continue

        if is_exclusion:
            entry = entry[1:].strip()

        parsed = try_parse_subnet(entry)
        if parsed is None:
            logger.debug(f"Ignoring unparsable subnet entry: {raw}")
            continue

        if parsed.network not in result:
            result.append(parsed.network)

    return result


def split_host_port(text: str) -> Tuple[str, Optional[int]]:
    """
    Split ``host[:port]`` into its parts.

    Bracketed IPv6 (``[::1]:8096``) is supported. A string with more than
    one colon and no brackets is treated as a bare IPv6 literal without a
    port.

    Raises:
        HostParseError: If a port is present but not a valid port number
    """
    value = text.strip()
    port_text: Optional[str] = None

    if value.startswith('['):
        end = value.find(']')
        if end == -1:
            raise HostParseError(f"Unterminated IPv6 literal: {text}")
        host = value[1:end]
        remainder = value[end + 1:]
        if remainder:
            if not remainder.startswith(':'):
                raise HostParseError(f"Unexpected characters after IPv6 literal: {text}")
            port_text = remainder[1:]
    elif value.count(':') == 1:
        host, _, port_text = value.partition(':')
    else:
        host = value

    if port_text is None:
        return host, None

    if not port_text.isdigit() or not 0 <= int(port_text) <= 65535:
        raise HostParseError(f"Invalid port in '{text}'")

    return host, int(port_text)


def parse_host(text: str, ipv4_enabled: bool = True, ipv6_enabled: bool = True) -> List[IPAddress]:
    """
    Resolve a host string to the addresses of the enabled families.

    Literal addresses are returned as-is (if their family is enabled).
    Anything else must look like a DNS name and is resolved with
    ``socket.getaddrinfo``.

    Args:
        text (str): ``host``, ``host:port``, ``[v6]:port`` or an IPv6 literal
        ipv4_enabled (bool): Keep IPv4 results
        ipv6_enabled (bool): Keep IPv6 results

    Returns:
        List of addresses, IPv4 first when both families are present

    Raises:
        HostParseError: If the host is empty, invalid, unresolvable, or
            only resolves to disabled families
    """
    if text is None or not text.strip():
        raise HostParseError("Host string cannot be empty")

    host, _ = split_host_port(text)
    host = host.strip()
    if not host:
        raise HostParseError(f"No host in '{text}'")

    try:
        candidates: List[IPAddress] = [ipaddress.ip_address(_strip_scope(host))]
    except ValueError:
        if not _HOSTNAME_PATTERN.match(host):
            raise HostParseError(f"Invalid host name: {host}")
        try:
            infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        except (socket.gaierror, UnicodeError) as e:
            raise HostParseError(f"Unable to resolve host '{host}': {e}") from e

        candidates = []
        for info in infos:
            address = ipaddress.ip_address(_strip_scope(info[4][0]))
            if address not in candidates:
                candidates.append(address)

    addresses = [
        a for a in candidates
        if (a.version == 4 and ipv4_enabled) or (a.version == 6 and ipv6_enabled)
    ]
    if not addresses:
        raise HostParseError(f"Host '{host}' has no addresses in the enabled address families")

    addresses.sort(key=lambda a: a.version)
    return addresses


def try_parse_host(text: str, ipv4_enabled: bool = True, ipv6_enabled: bool = True) -> List[IPAddress]:
    """Non-raising variant of ``parse_host``; returns an empty list on failure."""
    try:
        return parse_host(text, ipv4_enabled, ipv6_enabled)
    except HostParseError as e:
        logger.debug(f"Unable to parse host '{text}': {e}")
        return []


def subnet_contains(subnet: Optional[IPNetwork], address: Optional[IPAddress]) -> bool:
    """Family-aware containment; mismatched families and None never match."""
    if subnet is None or address is None:
        return False
    if subnet.version != address.version:
        return False
    return address in subnet


def host_network(address: IPAddress) -> IPNetwork:
    """Return the /32 or /128 network holding just this address."""
    return ipaddress.ip_network(f"{_strip_scope(str(address))}/{address.max_prefixlen}")


def is_loopback(address: IPAddress) -> bool:
    return address.is_loopback


def is_any(address: IPAddress) -> bool:
    return address in (IPV4_ANY, IPV6_ANY)


def format_address(address: IPAddress) -> str:
    """
    Canonical textual form used for every outward-facing address.

    IPv6 addresses are wrapped in brackets so they can be dropped straight
    into a URL, and any zone index is removed since it only has meaning on
    this host.

    Example:
        ```python
        format_address(ipaddress.ip_address("192.168.1.5"))    # "192.168.1.5"
        format_address(ipaddress.ip_address("fe80::1%eth0"))   # "[fe80::1]"
        ```
    """
    if address.version == 6:
        return f"[{_strip_scope(str(address))}]"
    return str(address)
