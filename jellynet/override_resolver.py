#!/usr/bin/env python3
"""
Jellynet Published Server URL Overrides

Administrators can advertise a different address to different peers, for
example a public DNS name to everyone outside the LAN while LAN clients keep
using the server's private address. Each rule is ``key=replacement`` where
the replacement is ``host``, ``host:port`` or a full URI.

**Rule Keys:**
    - ``all``: every peer
    - ``external``: every peer outside the LAN
    - ``internal``: every LAN subnet (expanded to one entry per subnet)
    - a subnet or address: peers inside that subnet
    - an adapter name: peers inside any of that adapter's subnets

**Matching Precedence:**
    A concrete subnet rule beats ``external``, which beats ``all``. Within
    the same rank the first rule in configuration order wins.

**Parse Failures:**
    A rule that does not have exactly one ``=`` discards the whole table for
    that reload, leaving no overrides in effect. A rule whose key is simply
    unknown is logged and skipped.

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import ipaddress
from typing import Dict, List, Optional, Sequence, Tuple

from .bind_enforcer import find_adapter_interfaces
from .network_models import BindResult, InterfaceAddress, PublishedKey
from .network_utils import (
    IPAddress, IPNetwork, IPV4_ANY, IPV4_BROADCAST, IPV6_ANY,
    subnet_contains, try_parse_subnet
)
from .utils import get_logger

logger = get_logger("jellynet.overrides")

PublishedTable = Tuple[Tuple[PublishedKey, str], ...]

ALL_KEY = PublishedKey("all", IPV4_BROADCAST, None)
EXTERNAL_IPV4_KEY = PublishedKey("external", IPV4_ANY, ipaddress.ip_network("0.0.0.0/0"))
EXTERNAL_IPV6_KEY = PublishedKey("external", IPV6_ANY, ipaddress.ip_network("::/0"))


def parse_published_server_urls(entries: Sequence[str], lan_subnets: Sequence[IPNetwork],
                                interfaces: Sequence[InterfaceAddress],
                                ipv4_enabled: bool = True, ipv6_enabled: bool = True) -> PublishedTable:
    """
    Build the override table from ``key=replacement`` strings.

    Args:
        entries: Rules from ``published_server_uri_by_subnet``
        lan_subnets: Current LAN subnets (for ``internal``)
        interfaces: Current bind interfaces (for adapter-name keys)
        ipv4_enabled (bool): Adapter-name keys only use enabled families
        ipv6_enabled (bool): Adapter-name keys only use enabled families

    Returns:
        Tuple of ``(PublishedKey, replacement)`` pairs, empty if any rule
        is malformed

    Example:
        ```python
        table = parse_published_server_urls(
            ["external=media.example.com:443", "192.168.10.0/24=10.1.1.1"],
            lan_subnets=[ipaddress.ip_network("192.168.0.0/16")],
            interfaces=[]
        )
        ```
    """
    table: Dict[PublishedKey, str] = {}

    for entry in entries:
        parts = entry.split('=')
        if len(parts) != 2:
            logger.error(f"Unable to parse bind override: {entry}. Discarding all published server URL overrides.")
            return ()

        identifier = parts[0].strip()
        replacement = parts[1].strip()
        lowered = identifier.lower()

        if lowered == "all":
            table[ALL_KEY] = replacement
        elif lowered == "external":
            table[EXTERNAL_IPV4_KEY] = replacement
            table[EXTERNAL_IPV6_KEY] = replacement
        elif lowered == "internal":
            for lan in lan_subnets:
                table[PublishedKey("subnet", lan.network_address, lan)] = replacement
        else:
            subnet = try_parse_subnet(identifier)
            if subnet is not None:
                table[PublishedKey("subnet", subnet.ip, subnet.network)] = replacement
                continue

            adapter_interfaces = find_adapter_interfaces(identifier, interfaces, ipv4_enabled, ipv6_enabled)
            if adapter_interfaces:
                for interface in adapter_interfaces:
                    table[PublishedKey("subnet", interface.address, interface.subnet)] = replacement
            else:
                logger.error(f"Unable to parse bind override: {entry}")

    return tuple(table.items())


def split_override_port(value: str) -> Tuple[str, Optional[int]]:
    """
    Split a trailing numeric port off an override replacement.

    Only ``host:port`` and ``[v6]:port`` are split. URIs such as
    ``https://media.example.com:8920`` contain more than one colon and are
    returned whole.

    Example:
        ```python
        split_override_port("media.example.com:8096")  # ("media.example.com", 8096)
        split_override_port("[2001:db8::5]:8096")      # ("[2001:db8::5]", 8096)
        split_override_port("https://example.com")     # ("https://example.com", None)
        ```
    """
    if value.startswith('[') and ']:' in value:
        host, _, port_text = value.rpartition(':')
    elif value.count(':') == 1:
        host, _, port_text = value.partition(':')
    else:
        return value, None

    if port_text.isdigit():
        return host, int(port_text)
    return value, None


def _rank(key: PublishedKey) -> int:
    if not key.is_wildcard:
        return 0
    if key.kind == "external":
        return 1
    return 2


def match_published_server_url(table: PublishedTable, peer: IPAddress, is_external: bool) -> Optional[BindResult]:
    """
    Find the override that applies to a peer.

    Args:
        table: Override table from ``parse_published_server_urls``
        peer (IPAddress): Address of the requesting peer
        is_external (bool): Peer is outside every LAN subnet

    Returns:
        BindResult with the replacement host and optional port, or None
    """
    candidates: List[Tuple[PublishedKey, str]] = []
    for key, replacement in table:
        if key.kind == "all":
            candidates.append((key, replacement))
        elif key.kind == "external":
            if is_external and subnet_contains(key.subnet, peer):
                candidates.append((key, replacement))
        elif subnet_contains(key.subnet, peer):
            candidates.append((key, replacement))

    if not candidates:
        logger.debug(f"{peer}: No matching bind address override found")
        return None

    # sorted() is stable, so configuration order decides within a rank
    _, replacement = sorted(candidates, key=lambda c: _rank(c[0]))[0]
    host, port = split_override_port(replacement)

    if port is not None:
        logger.debug(f"{peer}: Matching bind address override found: {host}:{port}")
    else:
        logger.debug(f"{peer}: Matching bind address override found: {host}")

    return BindResult(host, port)
