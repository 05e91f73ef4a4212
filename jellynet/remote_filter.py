#!/usr/bin/env python3
"""
Jellynet Remote-Access Filter

Parses the remote IP filter and decides whether a peer may connect at all.

**How the Decision Works:**
    - LAN peers are always allowed
    - Remote access disabled: every non-LAN peer is refused
    - Remote access enabled, no filter: every peer is allowed
    - Remote access enabled with a filter: the filter is an allow list, or a
      deny list when ``is_remote_ip_filter_blacklist`` is set

Author: Mark Newton
Project: Jellynet
Version: 1.0.0
License: MIT
"""

import ipaddress
from typing import List, Sequence, Tuple

from .lan_classifier import in_any_subnet
from .network_utils import IPAddress, IPNetwork, host_network, try_parse_subnets
from .utils import get_logger

logger = get_logger("jellynet.remote")


def parse_remote_filter(entries: Sequence[str]) -> Tuple[IPNetwork, ...]:
    """
    Parse the remote IP filter into networks.

    Entries with a ``/`` are subnets; bare addresses become /32 or /128.
    An empty list, or one whose first entry is blank, disables filtering.

    Example:
        ```python
        parse_remote_filter(["203.0.113.0/24", "198.51.100.7"])
        # (IPv4Network('203.0.113.0/24'), IPv4Network('198.51.100.7/32'))
        ```
    """
    if not entries or not entries[0] or not entries[0].strip():
        return ()

    networks: List[IPNetwork] = try_parse_subnets([e for e in entries if '/' in e])

    for entry in entries:
        if '/' in entry:
            continue
        try:
            address = ipaddress.ip_address(entry.strip())
        except ValueError:
            logger.debug(f"Ignoring unparsable remote filter entry: {entry}")
            continue
        networks.append(host_network(address))

    return tuple(networks)


def has_remote_access(peer: IPAddress, lan_subnets: Sequence[IPNetwork], remote_filter: Sequence[IPNetwork],
                      enable_remote_access: bool, is_blacklist: bool) -> bool:
    """
    Decide whether a peer may connect.

    Args:
        peer (IPAddress): Address of the connecting peer
        lan_subnets: Current LAN subnets
        remote_filter: Parsed remote filter
        enable_remote_access (bool): Remote access is globally enabled
        is_blacklist (bool): The filter is a deny list

    Returns:
        bool: True if the peer is allowed
    """
    in_lan = in_any_subnet(peer, lan_subnets)

    if not enable_remote_access:
        return in_lan

    if remote_filter and not in_lan:
        matches = in_any_subnet(peer, remote_filter)
        return not matches if is_blacklist else matches

    return True
