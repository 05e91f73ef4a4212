#!/usr/bin/env python3
"""
Jellynet Interface Discovery

This module enumerates the host's network adapters and turns them into the
raw interface list the rest of the engine works from. It replaces the
"guess the primary IP" heuristics of a simple startup banner with a full
scan of every adapter that is up and multicast capable.

**Interface Sources:**
    Discovery is pluggable. ``SystemInterfaceSource`` asks the operating
    system through psutil; ``MockInterfaceSource`` reads a literal string
    so tests (and support engineers reproducing a customer's setup) can
    describe any topology without touching real adapters:

    ```
    192.168.1.5/24,1,eth0|10.8.0.2/24,2,tun0|fe80::1/64,-1,eth0
    ```

    Each ``|``-separated entry is ``address/prefixLen,index,name``. A
    negative index conventionally marks the adapter as a gateway.

**Why Multicast Capable?**
    Tunnels and most pseudo adapters do not advertise multicast support, so
    "up and multicast" is a cheap filter for adapters that are real network
    paths.

**Graceful Degradation:**
    - One adapter failing to report is logged and skipped
    - The whole scan failing is logged and treated as "no adapters"
    - No adapters at all falls back to loopback so callers always have an address

Classes:
    DiscoveryResult: Interfaces and MAC addresses from one scan
    InterfaceSource: Base class with family filtering and loopback fallback
    SystemInterfaceSource: psutil-backed operating system scan
    MockInterfaceSource: Literal topology description

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import ipaddress
import socket
from abc import ABC, abstractmethod
from typing import List, NamedTuple, Optional, Tuple

import psutil

from .network_models import InterfaceAddress, ipv4_loopback_interface, ipv6_loopback_interface
from .network_utils import IPAddress, try_parse_subnet
from .utils import get_logger

_NULL_MACS = {"", "00:00:00:00:00:00", "00-00-00-00-00-00"}


class DiscoveryResult(NamedTuple):
    """Interfaces and MAC addresses found by one scan."""
    interfaces: Tuple[InterfaceAddress, ...]
    mac_addresses: Tuple[str, ...] = ()


class InterfaceSource(ABC):
    """
    Base class for everything that can produce the raw interface list.

    Subclasses implement ``scan``; ``discover`` applies the address-family
    filter and the loopback fallback so every source behaves the same way.
    """

    def __init__(self):
        self.logger = get_logger("jellynet.discovery")

    @abstractmethod
    def scan(self) -> DiscoveryResult:
        """Return every interface address this source knows about."""

    def discover(self, ipv4_enabled: bool, ipv6_enabled: bool) -> DiscoveryResult:
        """
        Scan, keep only enabled families and fall back to loopback.

        Args:
            ipv4_enabled (bool): Keep IPv4 addresses
            ipv6_enabled (bool): Keep IPv6 addresses

        Returns:
            DiscoveryResult: Never contains an empty interface list unless
                both families are disabled
        """
        self.logger.debug("Refreshing interfaces.")

        result = self.scan()
        interfaces = [
            i for i in result.interfaces
            if (i.family == 4 and ipv4_enabled) or (i.family == 6 and ipv6_enabled)
        ]

        if not interfaces:
            self.logger.warning("No interface information available. Using loopback interface(s).")
            if ipv4_enabled:
                interfaces.append(ipv4_loopback_interface())
            if ipv6_enabled:
                interfaces.append(ipv6_loopback_interface())

        self.logger.debug(f"Discovered {len(interfaces)} interfaces.")
        self.logger.debug(
            "Interfaces addresses: "
            f"{[str(i.address) for i in sorted(interfaces, key=lambda i: i.family)]}"
        )
        return DiscoveryResult(tuple(interfaces), result.mac_addresses)


def _prefix_length(netmask: Optional[str], address: IPAddress) -> int:
    """
    Convert a netmask string from psutil into a prefix length.

    psutil reports dotted masks for IPv4 and expanded masks
    (``ffff:ffff:ffff:ffff::``) for IPv6. A missing mask means a host route.
    """
    if not netmask:
        return address.max_prefixlen
    if '/' in netmask:
        return int(netmask.rsplit('/', 1)[1])
    mask = ipaddress.ip_address(netmask.split('%', 1)[0])
    return bin(int(mask)).count('1')


class SystemInterfaceSource(InterfaceSource):
    """
    Operating system interface scan using psutil.

    **Information Extracted:**
    - Adapter name and OS index (``socket.if_nametoindex``)
    - Unicast IPv4/IPv6 addresses with their prefix length
    - MAC address, unless the adapter is loopback or the MAC is unset

    Example:
        ```python
        source = SystemInterfaceSource()
        result = source.discover(ipv4_enabled=True, ipv6_enabled=False)
        for interface in result.interfaces:
            print(f"{interface.name}: {interface.address}/{interface.subnet.prefixlen}")
        ```
    """

    def scan(self) -> DiscoveryResult:
        interfaces: List[InterfaceAddress] = []
        mac_addresses: List[str] = []

        try:
            stats = psutil.net_if_stats()
            addresses = psutil.net_if_addrs()
        except Exception as e:
            self.logger.error(f"Error obtaining interfaces: {e}", exc_info=True)
            return DiscoveryResult(())

        for name, adapter_stats in stats.items():
            if not self._is_usable(adapter_stats):
                continue

            try:
                adapter_interfaces, mac = self._read_adapter(name, addresses.get(name, []), adapter_stats)
                interfaces.extend(adapter_interfaces)
                if mac:
                    mac_addresses.append(mac)
            except Exception as e:
                # One bad adapter must not abort the scan
                self.logger.error(f"Error encountered parsing interface {name}: {e}", exc_info=True)

        return DiscoveryResult(tuple(interfaces), tuple(mac_addresses))

    @staticmethod
    def _is_usable(adapter_stats) -> bool:
        """Adapter is up and multicast capable (flags are not reported on every platform)."""
        if not adapter_stats.isup:
            return False
        flags = getattr(adapter_stats, 'flags', '')
        if not flags:
            return True
        return 'multicast' in flags.split(',')

    @staticmethod
    def _adapter_index(name: str) -> int:
        try:
            return socket.if_nametoindex(name)
        except (OSError, ValueError):
            return 0

    def _read_adapter(self, name: str, adapter_addresses, adapter_stats) -> Tuple[List[InterfaceAddress], Optional[str]]:
        index = self._adapter_index(name)
        flags = getattr(adapter_stats, 'flags', '') or ''
        is_loopback_adapter = 'loopback' in flags.split(',')

        interfaces: List[InterfaceAddress] = []
        mac: Optional[str] = None

        for entry in adapter_addresses:
            if entry.family == psutil.AF_LINK:
                mac = entry.address.replace('-', ':').lower() if entry.address else ""
                continue

            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue

            address = ipaddress.ip_address(entry.address.split('%', 1)[0])
            if address.is_loopback:
                is_loopback_adapter = True

            prefix = _prefix_length(entry.netmask, address)
            subnet = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
            interfaces.append(InterfaceAddress(address, subnet, name, index))

        if is_loopback_adapter or mac in _NULL_MACS:
            mac = None

        return interfaces, mac


def parse_mock_interfaces(settings: str) -> List[InterfaceAddress]:
    """
    Parse the literal ``address/prefixLen,index,name|...`` encoding.

    Unparsable entries are logged and skipped.

    Example:
        ```python
        parse_mock_interfaces("192.168.1.5/24,1,eth0|10.0.0.2/8,-1,wan")
        # [InterfaceAddress(192.168.1.5, 192.168.1.0/24, 'eth0', 1),
        #  InterfaceAddress(10.0.0.2, 10.0.0.0/8, 'wan', -1)]
        ```
    """
    logger = get_logger("jellynet.discovery")
    interfaces: List[InterfaceAddress] = []

    for details in (settings or "").split('|'):
        if not details.strip():
            continue

        parts = [p.strip() for p in details.split(',')]
        subnet = try_parse_subnet(parts[0])
        if subnet is None or len(parts) < 3:
            logger.warning(f"Could not parse mock interface settings: {details}")
            continue

        try:
            index = int(parts[1])
        except ValueError:
            logger.warning(f"Could not parse mock interface settings: {details}")
            continue

        interfaces.append(InterfaceAddress(subnet.ip, subnet.network, parts[2], index))

    return interfaces


class MockInterfaceSource(InterfaceSource):
    """
    Interface source backed by a literal topology string.

    This bypasses the operating system entirely and reports no MAC
    addresses. The parsed list is fixed at construction so repeated scans
    are identical, and ``discover`` hands it over unchanged: no family
    filter and no loopback fallback.
    """

    def __init__(self, settings: str):
        super().__init__()
        self.settings = settings
        self._interfaces = tuple(parse_mock_interfaces(settings))

    def scan(self) -> DiscoveryResult:
        return DiscoveryResult(self._interfaces)

    def discover(self, ipv4_enabled: bool, ipv6_enabled: bool) -> DiscoveryResult:
        self.logger.debug(f"Using {len(self._interfaces)} mock interfaces.")
        return self.scan()
