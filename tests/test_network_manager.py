import ipaddress
import socket
import threading
from types import SimpleNamespace

import psutil
import pytest
from fastapi import Request

from jellynet.config_models import NetworkConfig, NetworkConfigurationStore
from jellynet.interface_discovery import MockInterfaceSource, SystemInterfaceSource
from jellynet.network_manager import NetworkManager
from jellynet.network_models import BindResult
from jellynet.network_monitor import NetworkChangeSource


def ip(text):
    return ipaddress.ip_address(text)


def make_manager(interfaces="", change_source=None, quiescence_window=0.05, **settings):
    """Builds a manager over a literal interface list."""
    store = NetworkConfigurationStore(NetworkConfig(**settings))
    return NetworkManager(
        store,
        interface_source=MockInterfaceSource(interfaces),
        change_source=change_source,
        quiescence_window=quiescence_window
    )


def make_system_manager(**settings):
    """Builds a manager that scans the (patched) operating system."""
    store = NetworkConfigurationStore(NetworkConfig(**settings))
    return NetworkManager(store, interface_source=SystemInterfaceSource())


def make_request(host, port=None):
    """Builds a Starlette request whose Host header is host[:port]."""
    header = f"{host}:{port}" if port else host
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "path": "/",
        "query_string": b"",
        "headers": [(b"host", header.encode())],
        "server": ("testserver", 80),
    }
    return Request(scope)


@pytest.fixture
def empty_host(mocker):
    """Patches psutil with a host that reports no adapters at all."""
    mocker.patch("jellynet.interface_discovery.psutil.net_if_stats", return_value={})
    mocker.patch("jellynet.interface_discovery.psutil.net_if_addrs", return_value={})


class SwitchableSource(MockInterfaceSource):
    """Mock source whose topology can be replaced between scans."""

    def set_interfaces(self, settings):
        self._interfaces = MockInterfaceSource(settings).scan().interfaces


# ==================== SCENARIOS ====================

def test_external_peer_uses_only_external_interface():
    """Tests that an external peer is given the single external bind interface."""
    manager = make_manager("10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan", local_network_subnets=["10.0.0.0/8"])
    assert manager.get_bind_address(ip("203.0.113.50")) == BindResult("203.0.113.9", None)


def test_internal_override_applies_before_interface_matching():
    """Tests that an 'internal' override answers LAN peers before interfaces are consulted."""
    manager = make_manager(
        "192.168.1.5/24,1,eth0",
        local_network_subnets=["192.168.0.0/16"],
        published_server_uri_by_subnet=["internal=myhost.local"]
    )
    assert manager.get_bind_address(ip("192.168.1.10")) == BindResult("myhost.local", None)


def test_remote_access_disabled_refuses_external_peer():
    """Tests that disabled remote access refuses external peers regardless of the filter."""
    manager = make_manager(
        "192.168.1.5/24,1,eth0",
        local_network_subnets=["192.168.0.0/16"],
        enable_remote_access=False,
        remote_ip_filter=["203.0.113.0/24"]
    )
    assert not manager.has_remote_access(ip("203.0.113.50"))
    assert manager.has_remote_access(ip("192.168.1.10"))


def test_no_interfaces_falls_back_to_ipv4_loopback(empty_host):
    """Tests the synthetic 127.0.0.1/8 entry and the loopback bind address."""
    manager = make_system_manager()
    assert [str(i.subnet) for i in manager.snapshot.interfaces] == ["127.0.0.0/8"]
    assert manager.get_bind_address(None) == BindResult("127.0.0.1", None)


def test_no_interfaces_with_ipv6_falls_back_to_ipv6_loopback(empty_host):
    """Tests that the loopback literal is ::1 once IPv6 is enabled."""
    manager = make_system_manager(enable_ipv6=True)
    assert [str(i.address) for i in manager.snapshot.interfaces] == ["127.0.0.1", "::1"]
    assert manager.get_bind_address(None).address == "::1"


def test_injected_empty_topology_skips_loopback_synthesis():
    """Tests that an empty injected interface list is used as is."""
    manager = make_manager("")
    assert manager.snapshot.interfaces == ()
    assert manager.snapshot.raw_interfaces == ()
    assert [str(i.address) for i in manager.get_all_bind_interfaces()] == ["0.0.0.0"]
    assert manager.get_bind_address(None) == BindResult("127.0.0.1", None)


# ==================== BIND ADDRESS RESOLUTION ====================

def test_null_peer_prefers_lan_interface_by_index():
    """Tests that with no peer the lowest-index LAN interface is preferred."""
    manager = make_manager(
        "203.0.113.9/24,0,wan|192.168.1.5/24,3,eth1|192.168.2.5/24,2,eth0",
        local_network_subnets=["192.168.0.0/16"]
    )
    assert manager.get_bind_address(None).address == "192.168.2.5"


def test_null_peer_is_loopback_only_without_other_interfaces():
    """Tests that the default bind address is loopback iff only loopback is bound."""
    manager = make_manager("127.0.0.1/8,1,lo")
    assert manager.get_bind_address(None).address == "127.0.0.1"

    manager = make_manager("127.0.0.1/8,1,lo|10.0.0.5/8,2,eth0")
    assert manager.get_bind_address(None).address == "10.0.0.5"


def test_internal_peer_prefers_interface_in_its_subnet():
    """Tests that a LAN peer is served from the interface on its own subnet."""
    manager = make_manager(
        "192.168.1.5/24,1,eth0|192.168.2.5/24,2,eth1",
        local_network_subnets=["192.168.0.0/16"]
    )
    assert manager.get_bind_address(ip("192.168.2.77")).address == "192.168.2.5"
    assert manager.get_bind_address(ip("192.168.9.9")).address == "192.168.1.5"


def test_external_peer_falls_back_to_discovered_external_interface():
    """Tests that an external interface removed by the bind list is still used for external peers."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan",
        local_network_subnets=["10.0.0.0/8"],
        local_network_addresses=["eth0"]
    )
    assert manager.get_bind_address(ip("198.51.100.7")).address == "203.0.113.9"


def test_external_peer_without_external_interfaces_uses_lan():
    """Tests the final fallback for an external peer on a LAN-only host."""
    manager = make_manager("10.0.0.5/8,1,eth0", local_network_subnets=["10.0.0.0/8"])
    assert manager.get_bind_address(ip("198.51.100.7")).address == "10.0.0.5"


def test_specific_override_beats_external_override():
    """Tests override precedence for an external peer."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan",
        local_network_subnets=["10.0.0.0/8"],
        published_server_uri_by_subnet=["external=public.example.com", "198.51.100.0/24=partner.example.com:8920"]
    )
    assert manager.get_bind_address(ip("198.51.100.7")) == BindResult("partner.example.com", 8920)
    assert manager.get_bind_address(ip("192.0.2.1")) == BindResult("public.example.com", None)


def test_skip_overrides():
    """Tests that overrides can be bypassed."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0",
        local_network_subnets=["10.0.0.0/8"],
        published_server_uri_by_subnet=["all=everyone.example.com"]
    )
    assert manager.get_bind_address(ip("10.1.1.1")).address == "everyone.example.com"
    assert manager.get_bind_address(ip("10.1.1.1"), skip_overrides=True).address == "10.0.0.5"


def test_ipv6_results_are_bracketed():
    """Tests that IPv6 bind addresses are formatted for use in URLs."""
    manager = make_manager("2001:db8::5/64,1,eth0", enable_ipv4=False, enable_ipv6=True,
                           local_network_subnets=["2001:db8::/32"])
    assert manager.get_bind_address(ip("2001:db8::77")).address == "[2001:db8::5]"


def test_bind_address_for_host_string():
    """Tests resolution from a host:port string."""
    manager = make_manager("10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan", local_network_subnets=["10.0.0.0/8"])
    assert manager.get_bind_address_for_host("203.0.113.50:8096") == BindResult("203.0.113.9", None)


def test_bind_address_for_request_uses_request_port():
    """Tests that the request's port is returned when no override supplies one."""
    manager = make_manager("10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan", local_network_subnets=["10.0.0.0/8"])
    assert manager.get_bind_address_for_request(make_request("203.0.113.50", 8096)) == BindResult("203.0.113.9", 8096)


def test_bind_address_for_request_keeps_override_port():
    """Tests that an override's port wins over the request's port."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0",
        local_network_subnets=["10.0.0.0/8"],
        published_server_uri_by_subnet=["external=media.example.com:443"]
    )
    result = manager.get_bind_address_for_request(make_request("203.0.113.50", 8096))
    assert result == BindResult("media.example.com", 443)


# ==================== CLASSIFICATION AND QUERIES ====================

@pytest.mark.parametrize("address,expected", [
    ("10.0.1.1", True),
    ("10.0.5.1", False),
    ("127.0.0.1", True),
    ("::1", True),
    ("203.0.113.1", False),
    ("2001:db8::1", False),
])
def test_is_in_local_network(address, expected):
    """Tests local classification with an excluded subnet inside the LAN."""
    manager = make_manager("10.0.0.5/8,1,eth0", local_network_subnets=["10.0.0.0/8", "!10.0.5.0/24"])
    assert manager.is_in_local_network(ip(address)) is expected
    assert manager.is_in_local_network(address) is expected


def test_trust_all_ipv6_widens_local_network():
    """Tests that the trust-all-IPv6 flag makes every IPv6 address local."""
    manager = make_manager("10.0.0.5/8,1,eth0", enable_ipv6=True, trust_all_ipv6_interfaces=True)
    assert manager.is_in_local_network(ip("2001:db8::1"))
    assert not manager.is_in_local_network(ip("203.0.113.1"))


def test_try_parse_interface():
    """Tests adapter lookup ordered by index."""
    manager = make_manager("10.0.0.5/8,4,eth0|10.0.0.6/8,1,eth0|192.168.1.5/24,2,eth1")
    assert [str(i.address) for i in manager.try_parse_interface("ETH0")] == ["10.0.0.6", "10.0.0.5"]
    assert manager.try_parse_interface("wlan0") == ()


def test_get_internal_bind_addresses():
    """Tests that only LAN bind interfaces are listed, ordered by index."""
    manager = make_manager(
        "192.168.1.5/24,3,eth1|203.0.113.9/24,1,wan|10.0.0.5/8,2,eth0"
    )
    assert [str(i.address) for i in manager.get_internal_bind_addresses()] == ["10.0.0.5", "192.168.1.5"]


def test_get_all_bind_interfaces_falls_back_to_any_address():
    """Tests the listen-everywhere fallback when no bind interface survives."""
    manager = make_manager("10.0.0.5/8,1,eth0", local_network_addresses=["192.168.77.1"])
    assert manager.snapshot.interfaces == ()
    assert [str(i.address) for i in manager.get_all_bind_interfaces()] == ["0.0.0.0"]
    assert manager.get_all_bind_interfaces(individual_interfaces=True) == []

    manager = make_manager("10.0.0.5/8,1,eth0", local_network_addresses=["192.168.77.1"], enable_ipv6=True)
    assert [str(i.address) for i in manager.get_all_bind_interfaces()] == ["::"]


def test_get_loopbacks():
    """Tests loopback entries per enabled family."""
    manager = make_manager("10.0.0.5/8,1,eth0", enable_ipv6=True)
    assert [str(i.address) for i in manager.get_loopbacks()] == ["127.0.0.1", "::1"]


def test_get_mac_addresses(mocker):
    """Tests that MAC addresses found by the scan are exposed."""
    mocker.patch(
        "jellynet.interface_discovery.psutil.net_if_stats",
        return_value={"eth0": SimpleNamespace(isup=True, flags="up,broadcast,running,multicast")}
    )
    mocker.patch("jellynet.interface_discovery.psutil.net_if_addrs", return_value={"eth0": [
        SimpleNamespace(family=psutil.AF_LINK, address="AA-BB-CC-DD-EE-01", netmask=None),
        SimpleNamespace(family=socket.AF_INET, address="192.168.1.5", netmask="255.255.255.0"),
    ]})
    mocker.patch("jellynet.interface_discovery.socket.if_nametoindex", return_value=2)

    assert make_system_manager().get_mac_addresses() == ("aa:bb:cc:dd:ee:01",)
    assert make_manager("10.0.0.5/8,1,eth0").get_mac_addresses() == ()


# ==================== REFRESH AND EVENTS ====================

def test_refresh_is_idempotent():
    """Tests that identical configuration and interfaces produce identical snapshots."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0|203.0.113.9/24,2,wan",
        local_network_subnets=["10.0.0.0/8", "!10.0.5.0/24"],
        published_server_uri_by_subnet=["external=media.example.com"],
        remote_ip_filter=["198.51.100.0/24"]
    )
    first = manager.update_settings(manager.config)
    second = manager.update_settings(manager.config)
    assert first == second
    assert manager.refresh_interfaces() == second


def test_configuration_change_reloads_everything():
    """Tests that a store update for the network key rebuilds the snapshot."""
    manager = make_manager("10.0.0.5/8,1,eth0")
    assert manager.snapshot.published_server_urls == ()

    manager.config_store.update_configuration(
        NetworkConfigurationStore.STORE_KEY,
        NetworkConfig(published_server_uri_by_subnet=["all=everyone.example.com"])
    )

    assert manager.get_bind_address(ip("10.1.1.1")).address == "everyone.example.com"


def test_malformed_override_fails_closed():
    """Tests that one malformed override discards every override for that reload."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0",
        published_server_uri_by_subnet=["all=everyone.example.com", "broken"]
    )
    assert manager.published_server_urls == {}
    assert manager.get_bind_address(ip("10.1.1.1")).address == "10.0.0.5"


def test_network_change_burst_refreshes_once_and_notifies_once():
    """Tests debounced handling of OS network notifications."""
    source = NetworkChangeSource()
    interface_source = SwitchableSource("10.0.0.5/8,1,eth0")
    store = NetworkConfigurationStore(NetworkConfig())
    manager = NetworkManager(store, interface_source=interface_source, change_source=source,
                             quiescence_window=0.1)

    notified = threading.Event()
    notifications = []

    def on_changed(sender):
        notifications.append(sender)
        notified.set()

    manager.subscribe_network_changed(on_changed)
    interface_source.set_interfaces("10.0.0.5/8,1,eth0|192.168.1.5/24,2,eth1")

    for _ in range(5):
        source.fire_address_changed()
        source.fire_availability_changed(True)

    assert notified.wait(5)
    assert notifications == [manager]
    assert [str(i.address) for i in manager.snapshot.interfaces] == ["10.0.0.5", "192.168.1.5"]


def test_light_refresh_keeps_overrides_and_filter():
    """Tests that an interface refresh carries configuration-only state over."""
    manager = make_manager(
        "10.0.0.5/8,1,eth0",
        published_server_uri_by_subnet=["external=media.example.com"],
        remote_ip_filter=["198.51.100.0/24"]
    )
    before = manager.snapshot
    after = manager.refresh_interfaces()
    assert after.published_server_urls == before.published_server_urls
    assert after.remote_address_filter == before.remote_address_filter


@pytest.mark.parametrize("os_has_ipv6,full_reload", [(False, True), (True, False)])
def test_network_change_reloads_fully_when_os_lacks_ipv6(mocker, os_has_ipv6, full_reload):
    """Tests that a network change runs a full reload only when IPv6 is configured but unsupported."""
    mocker.patch("jellynet.network_manager.socket.has_ipv6", os_has_ipv6)
    source = NetworkChangeSource()
    manager = make_manager(
        "10.0.0.5/8,1,eth0",
        change_source=source,
        enable_ipv6=True,
        published_server_uri_by_subnet=["all=everyone.example.com"]
    )
    update = mocker.spy(manager, "update_settings")
    refresh = mocker.spy(manager, "refresh_interfaces")
    notified = threading.Event()
    manager.subscribe_network_changed(lambda sender: notified.set())

    source.fire_address_changed()

    assert notified.wait(5)
    assert update.call_count == (1 if full_reload else 0)
    assert refresh.call_count == (0 if full_reload else 1)
    assert manager.get_bind_address(ip("10.1.1.1")).address == "everyone.example.com"


def test_dispose_unsubscribes_and_discards_results():
    """Tests that a disposed manager ignores notifications and keeps its last snapshot."""
    source = NetworkChangeSource()
    interface_source = SwitchableSource("10.0.0.5/8,1,eth0")
    store = NetworkConfigurationStore(NetworkConfig())
    manager = NetworkManager(store, interface_source=interface_source, change_source=source,
                             quiescence_window=0.05)
    before = manager.snapshot

    manager.dispose()
    interface_source.set_interfaces("192.168.1.5/24,2,eth1")
    source.fire_address_changed()
    store.update_configuration(NetworkConfigurationStore.STORE_KEY, NetworkConfig(enable_ipv6=True))
    manager.update_settings(NetworkConfig())

    assert not manager.coordinator.is_pending
    assert manager.snapshot is before
