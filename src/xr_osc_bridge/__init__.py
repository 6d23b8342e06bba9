"""
xr-osc-bridge

Relays 6DOF pose telemetry from an XR capture client to creative tools
over OSC/UDP. The capture client samples head and controller poses,
throttles them to a bounded aggregate rate and sends them over a
reconnecting ZeroMQ link; the relay routes each message by address
prefix to one UDP channel per device (HMD, controller 0, controller 1).

Examples:
    # Run the relay and a simulated capture client (after installation)
    xr-osc-bridge-server --osc-host 127.0.0.1
    xr-osc-bridge-client --server 127.0.0.1 --enable-streaming

    # Use the relay programmatically
    from xr_osc_bridge import RelayServer
    server = RelayServer()
    server.start()
"""

from importlib.metadata import PackageNotFoundError, version

from .channels import DeviceChannel, DeviceChannelManager
from .client import CaptureClient
from .config import get_version
from .publisher import ThrottledPublisher
from .router import MessageRouter
from .sampler import PoseSampler
from .server import RelayServer
from .transport import ReconnectingTransport
from .types import PoseSample, StreamId, WireMessage

__all__ = [
    # Relay
    "RelayServer",
    "MessageRouter",
    "DeviceChannel",
    "DeviceChannelManager",
    "get_version",
    # Capture client
    "CaptureClient",
    "PoseSampler",
    "ThrottledPublisher",
    "ReconnectingTransport",
    # Data types
    "PoseSample",
    "StreamId",
    "WireMessage",
]

try:
    __version__ = version("xr-osc-bridge")
except PackageNotFoundError:
    __version__ = "unknown"
