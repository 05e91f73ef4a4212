#!/usr/bin/env python3
"""
Jellynet Bind-Set Enforcer

Filters the discovered interfaces down to the ones the server is allowed to
listen on. The result is the authoritative bind-interface list until the
next refresh.

**Enforcement Steps:**
    1. Explicit bind list: each ``local_network_addresses`` entry is either an
       address/subnet (its literal address is used) or an adapter name
       (case-insensitive, its first address is used). Only interfaces whose
       address is in the resolved set survive. Requesting ``127.0.0.1`` or
       ``::1`` adds the loopback entry even if the scan did not report it.
    2. Virtual adapters: when ``ignore_virtual_interfaces`` is on, adapters
       whose name starts with any ``virtual_interface_names`` prefix are
       dropped (``veth*`` and ``veth`` are the same prefix).
    3. Disabled families: every address of a disabled family is dropped.

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

from typing import List, Sequence, Set, Tuple

from .config_models import NetworkConfig
from .network_models import InterfaceAddress, ipv4_loopback_interface, ipv6_loopback_interface
from .network_utils import IPAddress, IPV4_LOOPBACK, IPV6_LOOPBACK, try_parse_subnet
from .utils import get_logger

logger = get_logger("jellynet.bind")


def resolve_bind_addresses(entries: Sequence[str], interfaces: Sequence[InterfaceAddress]) -> Set[IPAddress]:
    """
    Resolve explicit bind entries to addresses, dropping unresolvable ones.

    Args:
        entries: Addresses, subnets or adapter names from configuration
        interfaces: Discovered interfaces used to resolve adapter names

    Returns:
        Set of addresses the administrator permitted
    """
    addresses: Set[IPAddress] = set()
    for entry in entries:
        subnet = try_parse_subnet(entry)
        if subnet is not None:
            addresses.add(subnet.ip)
            continue

        match = next((i for i in interfaces if i.name.lower() == entry.lower()), None)
        if match is not None:
            addresses.add(match.address)
        else:
            logger.debug(f"Ignoring bind address entry that matches no address or adapter: {entry}")

    return addresses


def find_adapter_interfaces(name: str, interfaces: Sequence[InterfaceAddress],
                            ipv4_enabled: bool, ipv6_enabled: bool) -> Tuple[InterfaceAddress, ...]:
    """
    All addresses of the adapter with this name (case-insensitive) in
    enabled families, ordered by adapter index.
    """
    if not name:
        return ()

    matches = [
        i for i in interfaces
        if i.name.lower() == name.lower()
        and ((ipv4_enabled and i.family == 4) or (ipv6_enabled and i.family == 6))
    ]
    return tuple(sorted(matches, key=lambda i: i.index))


def strip_virtual_prefixes(names: Sequence[str]) -> List[str]:
    """Remove ``*`` wildcards from the configured prefixes, dropping empty ones."""
    prefixes = [name.replace('*', '').strip() for name in names]
    return [p for p in prefixes if p]


def enforce_bind_settings(interfaces: Sequence[InterfaceAddress], config: NetworkConfig) -> Tuple[InterfaceAddress, ...]:
    """
    Apply explicit bind addresses, virtual adapter exclusion and family filters.

    Args:
        interfaces: Raw discovered interfaces
        config (NetworkConfig): Current network configuration

    Returns:
        Tuple of permitted bind interfaces

    Example:
        ```python
        config = NetworkConfig(local_network_addresses=["eth0", "127.0.0.1"])
        enforce_bind_settings(interfaces, config)
        # eth0's addresses plus a synthetic 127.0.0.1/8 entry
        ```
    """
    result: List[InterfaceAddress] = list(interfaces)

    if config.local_network_addresses:
        bind_addresses = resolve_bind_addresses(config.local_network_addresses, interfaces)
        result = [i for i in result if i.address in bind_addresses]

        present = {i.address for i in result}
        if IPV4_LOOPBACK in bind_addresses and IPV4_LOOPBACK not in present:
            result.append(ipv4_loopback_interface())
        if IPV6_LOOPBACK in bind_addresses and IPV6_LOOPBACK not in present:
            result.append(ipv6_loopback_interface())

    if config.ignore_virtual_interfaces:
        prefixes = [p.lower() for p in strip_virtual_prefixes(config.virtual_interface_names)]
        if prefixes:
            result = [i for i in result if not any(i.name.lower().startswith(p) for p in prefixes)]

    if not config.enable_ipv4:
        result = [i for i in result if i.family != 4]

    if not config.enable_ipv6:
        result = [i for i in result if i.family != 6]

    logger.info(f"Using bind addresses: {[str(i.address) for i in sorted(result, key=lambda i: i.family)]}")
    return tuple(result)
