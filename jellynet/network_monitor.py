#!/usr/bin/env python3
"""
Jellynet Network Change Monitor

Provides the operating system network-change notifications the network
manager subscribes to. There are two kinds:

- **Address changed**: an adapter gained or lost an address, or an adapter
  appeared, disappeared or changed state
- **Availability changed**: the host went from "some non-loopback adapter
  is up" to "none is" or back

**Why Polling?**
    The standard library has no portable network-change callback. psutil
    can list adapters on every supported platform, so the monitor takes a
    fingerprint of the adapter table at a fixed interval and fires events
    when it differs from the previous one. Bursty and duplicated events are
    expected and are debounced downstream by the change coordinator.

Classes:
    NetworkChangeSource: Subscription interface for both notification kinds
    PollingNetworkMonitor: psutil-based implementation running on a daemon thread

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import socket
import threading
from typing import Callable, FrozenSet, List, Optional, Tuple

import psutil

from .utils import get_logger

NetworkListener = Callable[[], None]
AvailabilityListener = Callable[[bool], None]

DEFAULT_POLL_INTERVAL = 5.0


class NetworkChangeSource:
    """
    Subscription interface for network-change notifications.

    Subscribers are kept per instance and called on the thread that
    detected the change. A subscriber that raises is logged and does not
    prevent the others from being called.
    """

    def __init__(self):
        self.logger = get_logger("jellynet.monitor")
        self._lock = threading.Lock()
        self._address_listeners: List[NetworkListener] = []
        self._availability_listeners: List[AvailabilityListener] = []

    def subscribe_address_changed(self, listener: NetworkListener) -> None:
        with self._lock:
            self._address_listeners.append(listener)

    def unsubscribe_address_changed(self, listener: NetworkListener) -> None:
        with self._lock:
            if listener in self._address_listeners:
                self._address_listeners.remove(listener)

    def subscribe_availability_changed(self, listener: AvailabilityListener) -> None:
        with self._lock:
            self._availability_listeners.append(listener)

    def unsubscribe_availability_changed(self, listener: AvailabilityListener) -> None:
        with self._lock:
            if listener in self._availability_listeners:
                self._availability_listeners.remove(listener)

    def fire_address_changed(self) -> None:
        with self._lock:
            listeners = list(self._address_listeners)

        for listener in listeners:
            try:
                listener()
            except Exception as e:
                self.logger.error(f"Error in address change listener: {e}", exc_info=True)

    def fire_availability_changed(self, is_available: bool) -> None:
        with self._lock:
            listeners = list(self._availability_listeners)

        for listener in listeners:
            try:
                listener(is_available)
            except Exception as e:
                self.logger.error(f"Error in availability change listener: {e}", exc_info=True)


Fingerprint = FrozenSet[Tuple[str, bool, Tuple[str, ...]]]


class PollingNetworkMonitor(NetworkChangeSource):
    """
    Watches the adapter table with psutil and fires change notifications.

    Example:
        ```python
        monitor = PollingNetworkMonitor(interval=5.0)
        monitor.subscribe_address_changed(lambda: print("addresses changed"))
        monitor.start()
        ...
        monitor.stop()
        ```
    """

    def __init__(self, interval: float = DEFAULT_POLL_INTERVAL):
        super().__init__()
        self.interval = interval

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._available: Optional[bool] = None

    @staticmethod
    def take_fingerprint() -> Fingerprint:
        """
        Snapshot of every adapter's name, up state and IP addresses.

        Returns:
            Frozen set of ``(name, is_up, sorted_addresses)`` tuples
        """
        stats = psutil.net_if_stats()
        addresses = psutil.net_if_addrs()

        entries = []
        for name, adapter_addresses in addresses.items():
            adapter_stats = stats.get(name)
            is_up = bool(adapter_stats and adapter_stats.isup)
            ips = sorted(
                a.address for a in adapter_addresses
                if a.family in (socket.AF_INET, socket.AF_INET6)
            )
            entries.append((name, is_up, tuple(ips)))

        return frozenset(entries)

    @staticmethod
    def is_network_available(fingerprint: Fingerprint) -> bool:
        """True if any adapter other than loopback is up and has an address."""
        for name, is_up, ips in fingerprint:
            if not is_up or not ips:
                continue
            if all(ip.startswith("127.") or ip.split('%', 1)[0] == "::1" for ip in ips):
                continue
            return True
        return False

    def poll(self) -> None:
        """Compare the adapter table with the previous poll and fire events."""
        try:
            fingerprint = self.take_fingerprint()
        except Exception as e:
            self.logger.error(f"Error reading network adapters: {e}")
            return

        available = self.is_network_available(fingerprint)

        if self._fingerprint is not None and fingerprint != self._fingerprint:
            self.logger.debug("Network address change detected")
            self.fire_address_changed()

        if self._available is not None and available != self._available:
            self.logger.debug(f"Network availability changed: {available}")
            self.fire_availability_changed(available)

        self._fingerprint = fingerprint
        self._available = available

    def _monitor_loop(self) -> None:
        self.logger.info(f"Network monitor started (interval {self.interval}s)")
        while not self._stop_event.wait(self.interval):
            self.poll()
        self.logger.info("Network monitor stopped")

    def start(self) -> None:
        """Take the baseline fingerprint and start the polling thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self.poll()
        self._thread = threading.Thread(target=self._monitor_loop, name="jellynet-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
