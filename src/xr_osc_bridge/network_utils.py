"""Local address discovery for the relay startup banner."""

import logging
import socket

import psutil

logger = logging.getLogger(__name__)

# Interface name prefixes that are almost never reachable from a headset
VIRTUAL_INTERFACE_PREFIXES = (
    "bridge",
    "docker",
    "veth",
    "vmnet",
    "vboxnet",
    "virbr",
    "tun",
    "tap",
    "utun",
    "vnic",
    "ppp",
)


def is_reachable_ipv4(address: str) -> bool:
    """False for loopback and link-local (APIPA) addresses."""
    return not address.startswith("127.") and not address.startswith("169.254.")


def get_local_ip_addresses() -> list[str]:
    """
    IPv4 addresses of the physical interfaces a capture device could reach.

    Virtual interfaces (containers, VPN tunnels, hypervisor bridges) are skipped.

    Example:
        >>> get_local_ip_addresses()
        ['192.168.1.100']
    """
    addresses: list[str] = []
    try:
        for name, entries in psutil.net_if_addrs().items():
            if name.lower().startswith(VIRTUAL_INTERFACE_PREFIXES):
                continue
            for entry in entries:
                if entry.family == socket.AF_INET and is_reachable_ipv4(entry.address):
                    addresses.append(entry.address)
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to get local IP addresses: {e}")
    return addresses


def relay_urls(port: int, bind_host: str = "0.0.0.0") -> list[str]:
    """Endpoints a capture client can be pointed at."""
    if bind_host not in ("0.0.0.0", "*", ""):
        return [f"tcp://{bind_host}:{port}"]
    hosts = ["localhost"] + get_local_ip_addresses()
    return [f"tcp://{host}:{port}" for host in hosts]
