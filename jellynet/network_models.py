#!/usr/bin/env python3
"""
Jellynet Network Models

This module contains the immutable value types shared by the network engine:
the individual interface address, the published-URL override key, the bind
decision returned to callers, and the snapshot bundle that holds the whole
derived network state.

**Why Frozen Dataclasses?**
    Query threads read the network state without taking a lock. That is only
    safe if nothing they hold can change under them, so every model here is
    frozen and every collection is a tuple. A refresh never edits a snapshot;
    it builds a new one and swaps the reference.

Classes:
    InterfaceAddress: One discovered or configured local address
    PublishedKey: Key of a published server URL override
    NetworkSnapshot: Complete derived network state from one refresh
    BindResult: Address string and optional port for a peer

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import ipaddress
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

from .network_utils import IPAddress, IPNetwork, IPV4_LOOPBACK, IPV6_LOOPBACK, host_network, subnet_contains

# Adapter index used for synthetic and override entries
DEFAULT_INDEX = 0


@dataclass(frozen=True)
class InterfaceAddress:
    """
    One local address together with the network and adapter it belongs to.

    Attributes:
        address (IPAddress): The unicast address
        subnet (IPNetwork): Network the address belongs to (may be a host route)
        name (str): Adapter name, "" for synthetic entries
        index (int): OS adapter ordering key, lower is preferred

    Raises:
        ValueError: If the address is not a member of the subnet

    Example:
        ```python
        eth0 = InterfaceAddress(
            address=ipaddress.ip_address("192.168.1.5"),
            subnet=ipaddress.ip_network("192.168.1.0/24"),
            name="eth0",
            index=2
        )
        ```
    """
    address: IPAddress
    subnet: IPNetwork
    name: str = ""
    index: int = DEFAULT_INDEX

    def __post_init__(self):
        if not subnet_contains(self.subnet, self.address):
            raise ValueError(f"Address {self.address} is not in subnet {self.subnet}")

    @property
    def family(self) -> int:
        """IP version of the address (4 or 6)."""
        return self.address.version

    @classmethod
    def for_host(cls, address: IPAddress, name: str = "", index: int = DEFAULT_INDEX) -> "InterfaceAddress":
        """Build an entry whose subnet is the host route of the address."""
        return cls(address=address, subnet=host_network(address), name=name, index=index)


def ipv4_loopback_interface() -> InterfaceAddress:
    """Synthetic ``127.0.0.1/8`` entry."""
    return InterfaceAddress(IPV4_LOOPBACK, ipaddress.ip_network("127.0.0.0/8"), "lo")


def ipv6_loopback_interface() -> InterfaceAddress:
    """Synthetic ``::1/128`` entry."""
    return InterfaceAddress.for_host(IPV6_LOOPBACK, "lo")


@dataclass(frozen=True)
class PublishedKey:
    """
    Key of one published server URL override.

    Attributes:
        kind (str): ``"subnet"`` for a concrete network, ``"external"`` for
            the any-address sentinels that match non-LAN peers, ``"all"``
            for the broadcast sentinel that matches every peer
        address (IPAddress): Sentinel or network address of the key
        subnet (Optional[IPNetwork]): Network the override applies to,
            None for the ``all`` sentinel
    """
    kind: str
    address: IPAddress
    subnet: Optional[IPNetwork] = None

    @property
    def is_wildcard(self) -> bool:
        return self.kind != "subnet"


@dataclass(frozen=True)
class NetworkSnapshot:
    """
    Complete derived network state produced by one refresh.

    Attributes:
        interfaces: Enforced bind interfaces
        mac_addresses: MAC addresses of the non-loopback adapters
        lan_subnets: Networks treated as LAN
        excluded_subnets: Networks subtracted from the LAN at query time
        published_server_urls: Override table as ``(key, replacement)`` pairs
        remote_address_filter: Allow/deny list for non-LAN peers
        raw_interfaces: Interfaces as discovered, before bind enforcement
    """
    interfaces: Tuple[InterfaceAddress, ...] = ()
    mac_addresses: Tuple[str, ...] = ()
    lan_subnets: Tuple[IPNetwork, ...] = ()
    excluded_subnets: Tuple[IPNetwork, ...] = ()
    published_server_urls: Tuple[Tuple[PublishedKey, str], ...] = ()
    remote_address_filter: Tuple[IPNetwork, ...] = ()
    raw_interfaces: Tuple[InterfaceAddress, ...] = ()


class BindResult(NamedTuple):
    """Bind address string for a peer plus the port from an override, if any."""
    address: str
    port: Optional[int] = None
