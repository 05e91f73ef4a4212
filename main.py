#!/usr/bin/env python3
"""
Jellynet Main Entry Point

Command line front end for the network engine. It loads the network
configuration, builds the network state once and prints what the engine
decided: the LAN, the bind interfaces, the overrides and the bind address
chosen for each requested peer.

In watch mode it also starts the network monitor and logs every network
change until interrupted, which is handy for checking how a host behaves
when cables are unplugged or VPNs come up.

Examples:
    python main.py --config /app/config/network.yaml --peer 203.0.113.50
    python main.py --mock-interfaces "10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan" --peer 203.0.113.50
    python main.py --watch

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import argparse
import ipaddress
import os
import signal
import sys
import threading
from typing import List, Optional

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from jellynet.config_models import ConfigurationValidator, NetworkConfigurationStore
from jellynet.interface_discovery import MockInterfaceSource
from jellynet.network_manager import NetworkManager
from jellynet.network_monitor import PollingNetworkMonitor
from jellynet.utils import setup_logging, get_logger


class NetworkDiagnostics:
    """Builds the network engine from the command line and reports its decisions"""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.logger = get_logger("jellynet.cli")
        self.manager: Optional[NetworkManager] = None
        self.monitor: Optional[PollingNetworkMonitor] = None
        self.stop_event = threading.Event()

    def signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        _ = frame
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.stop_event.set()

    def report(self) -> None:
        """Log the current network state and the bind address for each peer."""
        snapshot = self.manager.snapshot

        self.logger.info("=" * 60)
        self.logger.info("Network State")
        self.logger.info("=" * 60)
        self.logger.info(f"LAN subnets: {[str(s) for s in snapshot.lan_subnets]}")
        self.logger.info(f"Excluded subnets: {[str(s) for s in snapshot.excluded_subnets]}")
        for interface in snapshot.interfaces:
            self.logger.info(
                f"Bind interface: {interface.name or '-'} {interface.address}/{interface.subnet.prefixlen} "
                f"(index {interface.index})"
            )
        self.logger.info(f"MAC addresses: {list(snapshot.mac_addresses)}")
        for key, replacement in snapshot.published_server_urls:
            self.logger.info(f"Published server URL: {key.kind} {key.subnet or key.address} -> {replacement}")

        result = self.manager.get_bind_address(None)
        self.logger.info(f"Default bind address: {result.address}")

        for peer in self.args.peer or []:
            self.report_peer(peer)

    def report_peer(self, peer: str) -> None:
        try:
            address = ipaddress.ip_address(peer)
        except ValueError:
            result = self.manager.get_bind_address_for_host(peer)
            local = self.manager.is_in_local_network(peer)
            self.logger.info(f"Peer {peer}: bind {result.address} port {result.port} local={local}")
            return

        result = self.manager.get_bind_address(address)
        self.logger.info(
            f"Peer {peer}: bind {result.address} port {result.port} "
            f"local={self.manager.is_in_local_network(address)} "
            f"remote_access={self.manager.has_remote_access(address)}"
        )

    def on_network_changed(self, manager: NetworkManager) -> None:
        self.logger.info("Network changed")
        self.report()

    def run(self) -> int:
        validator = ConfigurationValidator()
        app_config = validator.load_and_validate_config(self.args.config)

        try:
            setup_logging(log_level=app_config.logging.log_level, log_dir=app_config.logging.log_dir)
        except PermissionError as e:
            # Outside the container /app/logs is usually not writable
            setup_logging(log_level=app_config.logging.log_level, log_dir="./logs")
            self.logger.warning(f"{e}, logging to ./logs instead")

        interface_source = MockInterfaceSource(self.args.mock_interfaces) if self.args.mock_interfaces else None
        if self.args.watch:
            self.monitor = PollingNetworkMonitor(interval=self.args.interval)

        store = NetworkConfigurationStore.from_app_config(app_config)
        self.manager = NetworkManager(store, interface_source=interface_source, change_source=self.monitor)
        self.report()

        if not self.args.watch:
            self.manager.dispose()
            return 0

        signal.signal(signal.SIGINT, self.signal_handler)
        signal.signal(signal.SIGTERM, self.signal_handler)

        self.manager.subscribe_network_changed(self.on_network_changed)
        self.monitor.start()
        self.logger.info("Watching for network changes, press Ctrl+C to stop")

        try:
            self.stop_event.wait()
        finally:
            self.monitor.stop(timeout=5)
            self.manager.dispose()

        return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect the Jellynet network engine's view of this host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --peer 192.168.1.20 --peer 203.0.113.50
  %(prog)s --config network.yaml --mock-interfaces "10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan"
  %(prog)s --watch --interval 2
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        default=os.environ.get("JELLYNET_CONFIG", "/app/config/network.json"),
        help="Path to JSON or YAML configuration (default: /app/config/network.json)"
    )

    parser.add_argument(
        "--peer",
        action="append",
        help="Peer address or host name to resolve a bind address for (repeatable)"
    )

    parser.add_argument(
        "--mock-interfaces",
        type=str,
        help="Replace the interface scan, format: address/prefix,index,name|..."
    )

    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and report network changes"
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Network monitor poll interval in seconds (default: 5)"
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    diagnostics = NetworkDiagnostics(parse_args(argv))
    try:
        return diagnostics.run()
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
