import ipaddress

import pytest

from jellynet.lan_classifier import (
    FALLBACK_IPV4_LAN, FALLBACK_IPV6_LAN, build_excluded_subnets, build_lan_subnets,
    is_lan_and_not_excluded, is_local_address
)


def ip(text):
    return ipaddress.ip_address(text)


def test_configured_lan_is_used():
    """Tests that configured subnets replace the well-known ranges."""
    lan = build_lan_subnets(["10.0.0.0/8", "!10.0.5.0/24"], ipv4_enabled=True, ipv6_enabled=True)
    assert lan == [ipaddress.ip_network("10.0.0.0/8")]


def test_fallback_ranges_respect_enabled_families():
    """Tests the RFC 1918 / RFC 4193 / RFC 4291 fallback per enabled family."""
    assert build_lan_subnets([], True, False) == list(FALLBACK_IPV4_LAN)
    assert build_lan_subnets([], False, True) == list(FALLBACK_IPV6_LAN)
    assert build_lan_subnets(["garbage"], True, True) == list(FALLBACK_IPV6_LAN) + list(FALLBACK_IPV4_LAN)


def test_fallback_contains_expected_ranges():
    """Tests the exact well-known ranges."""
    assert [str(n) for n in FALLBACK_IPV4_LAN] == ["127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]
    assert [str(n) for n in FALLBACK_IPV6_LAN] == ["::1/128", "fe80::/10", "fc00::/7"]


def test_exclusions_are_kept_separately():
    """Tests that exclusions are parsed from '!' entries only."""
    excluded = build_excluded_subnets(["10.0.0.0/8", "!10.0.5.0/24"])
    assert excluded == [ipaddress.ip_network("10.0.5.0/24")]


def test_excluded_subnet_is_not_local():
    """Tests that an address in an excluded subnet inside the LAN is not local."""
    lan = [ipaddress.ip_network("10.0.0.0/8")]
    excluded = [ipaddress.ip_network("10.0.5.0/24")]

    assert is_lan_and_not_excluded(ip("10.0.1.1"), lan, excluded)
    assert not is_lan_and_not_excluded(ip("10.0.5.1"), lan, excluded)
    assert not is_local_address(ip("10.0.5.1"), lan, excluded)


def test_exclusions_never_add():
    """Tests that an exclusion outside the LAN does not make anything local."""
    lan = [ipaddress.ip_network("10.0.0.0/8")]
    excluded = [ipaddress.ip_network("192.168.0.0/16")]
    assert not is_local_address(ip("192.168.1.1"), lan, excluded)


@pytest.mark.parametrize("address", ["127.0.0.1", "127.3.2.1", "::1"])
def test_loopback_is_always_local(address):
    """Tests that loopback is local even with no LAN and a covering exclusion."""
    excluded = [ipaddress.ip_network("127.0.0.0/8"), ipaddress.ip_network("::1/128")]
    assert is_local_address(ip(address), [], excluded)


def test_trust_all_ipv6():
    """Tests that trusting all IPv6 makes every IPv6 address local, and no IPv4 address."""
    assert is_local_address(ip("2001:db8::1"), [], [], trust_all_ipv6=True)
    assert not is_local_address(ip("2001:db8::1"), [], [], trust_all_ipv6=False)
    assert not is_local_address(ip("203.0.113.1"), [], [], trust_all_ipv6=True)
