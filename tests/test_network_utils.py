"""Tests for local address discovery."""

import socket
from collections import namedtuple
from unittest import mock

from xr_osc_bridge.network_utils import get_local_ip_addresses, is_reachable_ipv4, relay_urls

Addr = namedtuple("Addr", "family address")


def test_is_reachable_ipv4():
    assert is_reachable_ipv4("192.168.1.10")
    assert not is_reachable_ipv4("127.0.0.1")
    assert not is_reachable_ipv4("169.254.3.4")


def test_virtual_interfaces_are_skipped():
    interfaces = {
        "eth0": [Addr(socket.AF_INET, "192.168.1.10"), Addr(socket.AF_INET6, "fe80::1")],
        "docker0": [Addr(socket.AF_INET, "172.17.0.1")],
        "lo": [Addr(socket.AF_INET, "127.0.0.1")],
    }
    with mock.patch("psutil.net_if_addrs", return_value=interfaces):
        assert get_local_ip_addresses() == ["192.168.1.10"]


def test_relay_urls():
    assert relay_urls(8443, "10.0.0.5") == ["tcp://10.0.0.5:8443"]
    with mock.patch("xr_osc_bridge.network_utils.get_local_ip_addresses", return_value=["192.168.1.10"]):
        assert relay_urls(8443) == ["tcp://localhost:8443", "tcp://192.168.1.10:8443"]
