#!/usr/bin/env python3
"""
Jellynet Network Manager

This module contains the NetworkManager class, the single object the rest
of a media server talks to about networking. It owns the live network
state, rebuilds it when the configuration or the host's adapters change,
and answers every "which address should I use for this peer?" question.

**Understanding the Network State:**
    All derived state (bind interfaces, MAC addresses, LAN and excluded
    subnets, published URL overrides and the remote filter) lives in one
    frozen ``NetworkSnapshot``. Query methods copy the current reference
    once and work from that copy, so they never need a lock and never see a
    half-built state. A refresh builds a complete new snapshot and publishes
    it with a single assignment.

**Refresh Pipelines:**
    Full reload (configuration changed, or IPv6 enabled on a host without IPv6):
        LAN -> remote filter -> interface discovery -> bind enforcement -> overrides

    Light refresh (adapters changed):
        interface discovery -> LAN -> bind enforcement
        (overrides and remote filter only depend on configuration and are kept)

    Both pipelines run under one initialization lock so two refreshes can
    never interleave.

**Choosing a Bind Address:**
    For a peer address the manager tries, in order:
    1. A published server URL override for the peer's subnet or direction
    2. A bind interface on the same side of the LAN boundary as the peer
    3. For external peers, any discovered interface outside the LAN
    4. The preferred non-loopback interface, or the loopback address

Classes:
    NetworkManager: Live network state, refresh pipelines and query surface

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import dataclasses
import ipaddress
import socket
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from fastapi import Request

from .bind_enforcer import enforce_bind_settings, find_adapter_interfaces
from .change_coordinator import DEFAULT_QUIESCENCE_WINDOW, ChangeCoordinator
from .config_models import NetworkConfig, NetworkConfigurationStore
from .interface_discovery import InterfaceSource, SystemInterfaceSource
from .lan_classifier import (
    build_excluded_subnets, build_lan_subnets, in_any_subnet, is_local_address, log_lan_configuration
)
from .network_models import (
    BindResult, InterfaceAddress, NetworkSnapshot, PublishedKey,
    ipv4_loopback_interface, ipv6_loopback_interface
)
from .network_monitor import NetworkChangeSource
from .network_utils import (
    IPAddress, IPV4_ANY, IPV6_ANY, format_address, is_any, is_loopback, subnet_contains,
    try_parse_host, try_parse_subnet
)
from .override_resolver import match_published_server_url, parse_published_server_urls
from .remote_filter import has_remote_access, parse_remote_filter
from .utils import get_logger

NetworkChangedListener = Callable[['NetworkManager'], None]


class NetworkManager:
    """
    Live network state and bind-address decisions for a media server.

    The manager builds its first snapshot in the constructor, then listens
    for configuration changes on the store and, if a change source is
    given, for operating system network changes.

    Attributes:
        config_store (NetworkConfigurationStore): Source of the network configuration
        interface_source (InterfaceSource): Produces the raw interface list
        change_source (Optional[NetworkChangeSource]): OS network-change notifications
        coordinator (ChangeCoordinator): Debounces OS notifications

    Example:
        ```python
        store = NetworkConfigurationStore(NetworkConfig(local_network_subnets=["10.0.0.0/8"]))
        manager = NetworkManager(
            store,
            interface_source=MockInterfaceSource("10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan")
        )

        manager.get_bind_address(ipaddress.ip_address("203.0.113.50"))
        # BindResult(address='203.0.113.9', port=None)
        ```
    """

    def __init__(self, config_store: NetworkConfigurationStore,
                 interface_source: Optional[InterfaceSource] = None,
                 change_source: Optional[NetworkChangeSource] = None,
                 quiescence_window: float = DEFAULT_QUIESCENCE_WINDOW):
        self.logger = get_logger("jellynet.manager")
        self.config_store = config_store
        self.interface_source = interface_source or SystemInterfaceSource()
        self.change_source = change_source

        self._init_lock = threading.RLock()
        self._listeners_lock = threading.Lock()
        self._network_changed_listeners: List[NetworkChangedListener] = []
        self._snapshot = NetworkSnapshot()
        self._disposed = False

        self.coordinator = ChangeCoordinator(
            refresh=self._on_network_change,
            notify=self.notify_network_changed,
            quiescence_window=quiescence_window
        )

        self.update_settings(self.config_store.get_network_configuration())

        self.config_store.subscribe(self._configuration_updated)
        if self.change_source is not None:
            self.change_source.subscribe_address_changed(self._on_network_address_changed)
            self.change_source.subscribe_availability_changed(self._on_network_availability_changed)

    # ==================== CONFIGURATION ====================

    @property
    def config(self) -> NetworkConfig:
        return self.config_store.get_network_configuration()

    @property
    def is_ipv4_enabled(self) -> bool:
        return self.config.enable_ipv4

    @property
    def is_ipv6_enabled(self) -> bool:
        return self.config.enable_ipv6

    @property
    def trust_all_ipv6_interfaces(self) -> bool:
        return self.config.trust_all_ipv6_interfaces

    @property
    def snapshot(self) -> NetworkSnapshot:
        """The currently published network state."""
        return self._snapshot

    @property
    def published_server_urls(self) -> Dict[PublishedKey, str]:
        return dict(self._snapshot.published_server_urls)

    # ==================== REFRESH PIPELINES ====================

    def _publish(self, snapshot: NetworkSnapshot) -> bool:
        if self._disposed:
            self.logger.debug("Network manager disposed, discarding refreshed network state")
            return False
        self._snapshot = snapshot
        return True

    def update_settings(self, config: NetworkConfig) -> NetworkSnapshot:
        """
        Rebuild the whole network state from a configuration.

        Args:
            config (NetworkConfig): Configuration to apply

        Returns:
            NetworkSnapshot: The newly built snapshot (published unless the
                manager has been disposed)

        Raises:
            TypeError: If config is not a NetworkConfig
        """
        if not isinstance(config, NetworkConfig):
            raise TypeError(f"Expected NetworkConfig, got {type(config).__name__}")

        with self._init_lock:
            lan_subnets = build_lan_subnets(config.local_network_subnets, config.enable_ipv4, config.enable_ipv6)
            excluded_subnets = build_excluded_subnets(config.local_network_subnets)
            log_lan_configuration(lan_subnets, excluded_subnets)

            remote_filter = parse_remote_filter(config.remote_ip_filter)

            discovery = self.interface_source.discover(config.enable_ipv4, config.enable_ipv6)
            interfaces = enforce_bind_settings(discovery.interfaces, config)

            published = parse_published_server_urls(
                config.published_server_uri_by_subnet, lan_subnets, interfaces,
                config.enable_ipv4, config.enable_ipv6
            )

            snapshot = NetworkSnapshot(
                interfaces=interfaces,
                mac_addresses=discovery.mac_addresses,
                lan_subnets=tuple(lan_subnets),
                excluded_subnets=tuple(excluded_subnets),
                published_server_urls=published,
                remote_address_filter=remote_filter,
                raw_interfaces=discovery.interfaces
            )
            self._publish(snapshot)

        return snapshot

    def refresh_interfaces(self, config: Optional[NetworkConfig] = None) -> NetworkSnapshot:
        """
        Rediscover interfaces and rebuild the LAN and bind list.

        Overrides and the remote filter are carried over from the current
        snapshot since they only depend on configuration.
        """
        config = config or self.config

        with self._init_lock:
            discovery = self.interface_source.discover(config.enable_ipv4, config.enable_ipv6)

            lan_subnets = build_lan_subnets(config.local_network_subnets, config.enable_ipv4, config.enable_ipv6)
            excluded_subnets = build_excluded_subnets(config.local_network_subnets)
            log_lan_configuration(lan_subnets, excluded_subnets)

            interfaces = enforce_bind_settings(discovery.interfaces, config)

            snapshot = dataclasses.replace(
                self._snapshot,
                interfaces=interfaces,
                mac_addresses=discovery.mac_addresses,
                lan_subnets=tuple(lan_subnets),
                excluded_subnets=tuple(excluded_subnets),
                raw_interfaces=discovery.interfaces
            )
            self._publish(snapshot)

        return snapshot

    def _on_network_change(self) -> None:
        """Refresh run by the coordinator once the quiescence window has passed."""
        config = self.config
        if config.enable_ipv6 and not socket.has_ipv6:
            self.update_settings(config)
        else:
            self.refresh_interfaces(config)

    def _configuration_updated(self, key: str, config) -> None:
        if key == NetworkConfigurationStore.STORE_KEY:
            self.update_settings(config)

    def _on_network_address_changed(self) -> None:
        self.logger.debug("Network address change detected.")
        self.coordinator.trigger("address changed")

    def _on_network_availability_changed(self, is_available: bool) -> None:
        self.logger.debug("Network availability changed.")
        self.coordinator.trigger("availability changed")

    # ==================== NETWORK CHANGED EVENT ====================

    def subscribe_network_changed(self, listener: NetworkChangedListener) -> None:
        with self._listeners_lock:
            self._network_changed_listeners.append(listener)

    def unsubscribe_network_changed(self, listener: NetworkChangedListener) -> None:
        with self._listeners_lock:
            if listener in self._network_changed_listeners:
                self._network_changed_listeners.remove(listener)

    def notify_network_changed(self) -> None:
        """Call every network-changed subscriber with this manager."""
        with self._listeners_lock:
            listeners = list(self._network_changed_listeners)

        for listener in listeners:
            try:
                listener(self)
            except Exception as e:
                self.logger.error(f"Error in network changed listener: {e}", exc_info=True)

    def dispose(self) -> None:
        """
        Stop listening for changes.

        Safe to call while a refresh is running; its result is discarded.
        """
        if self._disposed:
            return

        self._disposed = True
        self.config_store.unsubscribe(self._configuration_updated)
        if self.change_source is not None:
            self.change_source.unsubscribe_address_changed(self._on_network_address_changed)
            self.change_source.unsubscribe_availability_changed(self._on_network_availability_changed)
        self.coordinator.close()
        self.logger.debug("Network manager disposed")

    # ==================== CLASSIFICATION ====================

    def is_in_local_network(self, address: Union[str, IPAddress]) -> bool:
        """
        Check whether an address (or a subnet, host name or address string) is local.

        An address is local if it is loopback, or if all IPv6 is trusted and
        it is IPv6, or if it is in the LAN and in no excluded subnet. A host
        name is local if any of its resolved addresses is.
        """
        snapshot = self._snapshot
        trust_all_ipv6 = self.trust_all_ipv6_interfaces

        if not isinstance(address, str):
            return is_local_address(address, snapshot.lan_subnets, snapshot.excluded_subnets, trust_all_ipv6)

        subnet = try_parse_subnet(address)
        if subnet is not None:
            return is_local_address(subnet.ip, snapshot.lan_subnets, snapshot.excluded_subnets, trust_all_ipv6)

        for resolved in try_parse_host(address, self.is_ipv4_enabled, self.is_ipv6_enabled):
            if is_local_address(resolved, snapshot.lan_subnets, snapshot.excluded_subnets, trust_all_ipv6):
                return True

        return False

    def has_remote_access(self, remote_ip: IPAddress) -> bool:
        """True if the peer may connect under the remote-access settings."""
        snapshot = self._snapshot
        config = self.config
        return has_remote_access(
            remote_ip, snapshot.lan_subnets, snapshot.remote_address_filter,
            config.enable_remote_access, config.is_remote_ip_filter_blacklist
        )

    # ==================== INTERFACE QUERIES ====================

    def try_parse_interface(self, name: str) -> Tuple[InterfaceAddress, ...]:
        """Bind interfaces of the named adapter in enabled families, ordered by index."""
        return find_adapter_interfaces(name, self._snapshot.interfaces, self.is_ipv4_enabled, self.is_ipv6_enabled)

    def get_mac_addresses(self) -> Tuple[str, ...]:
        return self._snapshot.mac_addresses

    def get_loopbacks(self) -> List[InterfaceAddress]:
        loopbacks = []
        if self.is_ipv4_enabled:
            loopbacks.append(ipv4_loopback_interface())
        if self.is_ipv6_enabled:
            loopbacks.append(ipv6_loopback_interface())
        return loopbacks

    def get_all_bind_interfaces(self, individual_interfaces: bool = False) -> List[InterfaceAddress]:
        """
        Addresses a listener should bind to.

        When no bind interface survived enforcement the server listens on
        every address: ``::`` (dual mode) when both families are enabled,
        ``0.0.0.0`` when only IPv4 is. With ``individual_interfaces`` the
        empty list is returned instead.
        """
        interfaces = self._snapshot.interfaces
        if interfaces:
            return list(interfaces)

        if individual_interfaces:
            return []

        if self.is_ipv4_enabled and self.is_ipv6_enabled:
            return [InterfaceAddress(IPV6_ANY, ipaddress.ip_network("::/0"))]
        if self.is_ipv4_enabled:
            return [InterfaceAddress(IPV4_ANY, ipaddress.ip_network("0.0.0.0/0"))]

        # IPv6 only: binding to :: would also accept IPv4 connections
        return []

    def get_internal_bind_addresses(self) -> List[InterfaceAddress]:
        """Bind interfaces that are in the local network, ordered by index."""
        return sorted(
            (i for i in self._snapshot.interfaces if self.is_in_local_network(i.address)),
            key=lambda i: i.index
        )

    # ==================== BIND ADDRESS RESOLUTION ====================

    def get_bind_address_for_host(self, source: str) -> BindResult:
        """Resolve a host string (``host``, ``host:port``, ``[v6]:port``) and pick a bind address."""
        addresses = try_parse_host(source, self.is_ipv4_enabled, self.is_ipv6_enabled)
        return self.get_bind_address(addresses[0] if addresses else None)

    def get_bind_address_for_request(self, request: Request) -> BindResult:
        """
        Pick a bind address for an inbound HTTP request.

        The request's declared host is resolved like any host string. When
        no override supplied a port, the request's own port is returned.
        """
        host = request.url.hostname or ""
        result = self.get_bind_address_for_host(host)
        if result.port is None:
            return BindResult(result.address, request.url.port)
        return result

    def get_bind_address(self, source: Optional[IPAddress], skip_overrides: bool = False) -> BindResult:
        """
        Choose the local address to bind or advertise for a peer.

        Args:
            source (Optional[IPAddress]): Peer address, None for "no specific requester"
            skip_overrides (bool): Ignore published server URL overrides

        Returns:
            BindResult: Address string (IPv6 bracketed) and the port from an
                override, if one supplied it

        Example:
            ```python
            manager.get_bind_address(None)
            # BindResult(address='192.168.1.5', port=None)

            manager.get_bind_address(ipaddress.ip_address("203.0.113.50"))
            # BindResult(address='media.example.com', port=443) with an external override
            ```
        """
        snapshot = self._snapshot

        if source is not None:
            if self.is_ipv4_enabled and not self.is_ipv6_enabled and source.version == 6:
                self.logger.warning(
                    "IPv6 is disabled in Jellynet, but enabled in the OS. This may affect how the interface is selected."
                )
            if not self.is_ipv4_enabled and self.is_ipv6_enabled and source.version == 4:
                self.logger.warning(
                    "IPv4 is disabled in Jellynet, but enabled in the OS. This may affect how the interface is selected."
                )

            is_external = not in_any_subnet(source, snapshot.lan_subnets)
            self.logger.debug(f"Trying to get bind address for source {source} - External: {is_external}")

            if not skip_overrides:
                override = match_published_server_url(snapshot.published_server_urls, source, is_external)
                if override is not None:
                    return override

            result = self._match_bind_interface(snapshot, source, is_external)
            if result is not None:
                return BindResult(result)

            if is_external:
                result = self._match_external_interface(snapshot, source)
                if result is not None:
                    return BindResult(result)

        return BindResult(self._fallback_address(snapshot, source))

    def _is_local(self, snapshot: NetworkSnapshot, address: IPAddress) -> bool:
        return is_local_address(address, snapshot.lan_subnets, snapshot.excluded_subnets,
                                self.trust_all_ipv6_interfaces)

    @staticmethod
    def _prefer_containing(candidates: Sequence[InterfaceAddress], source: IPAddress) -> InterfaceAddress:
        """The interface whose subnet holds the source, else the lowest index one."""
        ordered = sorted(candidates, key=lambda i: i.index)
        return next((i for i in ordered if subnet_contains(i.subnet, source)), ordered[0])

    def _match_bind_interface(self, snapshot: NetworkSnapshot, source: IPAddress,
                              is_external: bool) -> Optional[str]:
        interfaces = snapshot.interfaces
        if len(interfaces) == 1 and is_any(interfaces[0].address):
            interfaces = ()

        if not interfaces:
            return None

        if is_external:
            external = [i for i in interfaces if not self._is_local(snapshot, i.address)]
            if external:
                result = format_address(self._prefer_containing(external, source).address)
                self.logger.debug(f"{source}: External request received, matching external bind address found: {result}")
                return result

            self.logger.warning(
                f"{source}: External request received, no matching external bind address found, trying internal addresses."
            )
            return None

        internal = [i for i in interfaces if self._is_local(snapshot, i.address)]
        if internal:
            result = format_address(self._prefer_containing(internal, source).address)
            self.logger.debug(f"{source}: Internal request received, matching internal bind address found: {result}")
            return result

        return None

    def _match_external_interface(self, snapshot: NetworkSnapshot, source: IPAddress) -> Optional[str]:
        external = [i for i in snapshot.raw_interfaces if not self._is_local(snapshot, i.address)]
        if not external:
            self.logger.warning(
                f"{source}: External request received, but no external interface found. "
                "Need to route through internal network."
            )
            return None

        result = format_address(self._prefer_containing(external, source).address)
        self.logger.debug(f"{source}: Using external interface as bind address: {result}")
        return result

    def _fallback_address(self, snapshot: NetworkSnapshot, source: Optional[IPAddress]) -> str:
        available = sorted(
            (i for i in snapshot.interfaces if not is_loopback(i.address)),
            key=lambda i: (not self._is_local(snapshot, i.address), i.index)
        )

        if not available:
            result = "127.0.0.1" if self.is_ipv4_enabled and not self.is_ipv6_enabled else "::1"
            self.logger.warning(f"{source}: Only loopback {result} returned, using that as bind address.")
            return result

        if source is None:
            result = format_address(available[0].address)
            self.logger.debug(f"{source}: Using first internal interface as bind address: {result}")
            return result

        for interface in available:
            if subnet_contains(interface.subnet, source):
                result = format_address(interface.address)
                self.logger.debug(f"{source}: Found interface with matching subnet, using it as bind address: {result}")
                return result

        result = format_address(available[0].address)
        self.logger.debug(f"{source}: No matching interfaces found, using preferred interface as bind address: {result}")
        return result
