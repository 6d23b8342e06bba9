# server.py
import argparse
import logging
import platform
import threading
import time
from pathlib import Path
from typing import Any

import zmq
import zmq.auth
from pythonosc import udp_client
from zmq.utils.monitor import recv_monitor_message

from . import network_utils
from .channels import DeviceChannelManager, Destination
from .config import (
    SERVER_SECTION,
    ConfigOverride,
    ServerConfig,
    add_logging_arguments,
    get_version,
    load_config_or_exit,
    load_default_config,
)
from .logging_utils import configure_logging
from .protocol import encode_connection_status
from .router import MessageRouter
from .telemetry import RelayTelemetry
from .types import StreamId

logger = logging.getLogger(__name__)


def port_in_use_hint(port: int) -> list[str]:
    """Platform-specific commands for finding and stopping the port's owner."""
    if platform.system() == "Windows":
        return [
            f"You can find the process using: netstat -ano | findstr :{port}",
            "And stop it using: taskkill /PID <PID> /F",
        ]
    return [
        f"You can find the process using: lsof -i :{port}",
        "And stop it using: kill <PID>",
    ]


def build_destinations(config: ServerConfig) -> dict[StreamId, Destination]:
    return {
        device: Destination(config.destination_host(device), config.destination_port(device))
        for device in StreamId
    }


def load_server_keys(path: str) -> tuple[bytes, bytes]:
    """Read a CURVE certificate that must contain a secret key."""
    public, secret = zmq.auth.load_certificate(path)
    if not secret:
        raise ValueError(f"{path} has no secret key")
    return public, secret


class RelayServer:
    """Accepts capture clients on a ROUTER socket and fans poses out over OSC.

    Threads:
        ReceiveThread: owns the ROUTER socket; routes every inbound payload.
        PeriodicThread: status log, stale peer cleanup, connection counts.
    """

    PERIODIC_LOOP_SLEEP = 0.1
    PEER_CLEANUP_INTERVAL = 5.0

    def __init__(
        self,
        config: ServerConfig | None = None,
        context: zmq.Context | None = None,
        client_factory: Any = udp_client.UDPClient,
        timer_factory: Any = threading.Timer,
    ):
        self.config = config or load_default_config(SERVER_SECTION)
        self.telemetry = RelayTelemetry(
            log_every_message=self.config.log_osc_messages,
            log_sample_rate=self.config.log_sample_rate,
        )
        self.channels = DeviceChannelManager(
            build_destinations(self.config),
            reopen_delay=self.config.channel_reconnect_delay,
            telemetry=self.telemetry,
            enforce_arity=self.config.enforce_arity,
            client_factory=client_factory,
            timer_factory=timer_factory,
        )
        self.router = MessageRouter(
            self.channels, self.telemetry, max_payload_bytes=self.config.max_payload_bytes
        )

        self._owns_context = context is None
        self.context = context or zmq.Context()
        self.socket: zmq.Socket | None = None
        self._monitor: zmq.Socket | None = None

        # identity -> last message time (monotonic)
        self._peers: dict[bytes, float] = {}
        self._peers_lock = threading.Lock()
        self._accepted = 0
        self._disconnected = 0

        self.running = False
        self.receive_thread: threading.Thread | None = None
        self.periodic_thread: threading.Thread | None = None

    @property
    def endpoint(self) -> str:
        return f"tcp://{self.config.bind_host}:{self.config.listen_port}"

    @property
    def known_peers(self) -> int:
        with self._peers_lock:
            return len(self._peers)

    def start(self) -> None:
        """Open every OSC channel, then bind the listener and start the threads.

        Raises:
            SystemExit: the listening port is taken or CURVE keys cannot be loaded.
        """
        logger.info(f"Starting relay on {self.endpoint}")
        self.channels.open_all()

        keys = None
        if self.config.curve_secret_key_file:
            try:
                keys = load_server_keys(self.config.curve_secret_key_file)
            except (OSError, ValueError) as e:
                logger.error(
                    f"Cannot load CURVE secret key from {self.config.curve_secret_key_file}: {e}"
                )
                self._abort_startup()
                raise SystemExit(1) from e

        try:
            self.socket = self._bind_socket(keys)
        except zmq.error.ZMQError as e:
            if e.errno == zmq.EADDRINUSE or "Address already in use" in str(e):
                logger.error(
                    f"Error: Another process is already listening on port {self.config.listen_port}"
                )
                logger.error("Please stop it before starting the relay.")
                for line in port_in_use_hint(self.config.listen_port):
                    logger.error(line)
                self._abort_startup()
                raise SystemExit(1) from e
            logger.error(f"ZMQ Error: {e}")
            self._abort_startup()
            raise

        self.running = True
        self.receive_thread = threading.Thread(target=self._receive_loop, name="ReceiveThread")
        self.periodic_thread = threading.Thread(target=self._periodic_loop, name="PeriodicThread")
        self.receive_thread.start()
        self.periodic_thread.start()

        logger.info(f"Relay listening on {self.endpoint}")
        logger.info("Waiting for capture clients...")

    def stop(self) -> None:
        """Stop threads, close every channel and the listener. Pending sends are dropped."""
        logger.info("Stopping relay...")
        self.running = False

        if self.receive_thread:
            self.receive_thread.join()
            self.receive_thread = None
            logger.info("Receive thread stopped")
        if self.periodic_thread:
            self.periodic_thread.join()
            self.periodic_thread = None
            logger.info("Periodic thread stopped")

        self.channels.close_all()
        self._close_sockets()
        self._term_context()

        snapshot = self.telemetry.snapshot()
        logger.info(
            f"Relay stopped. Total messages forwarded: {snapshot['total_messages']}, "
            f"errors: {snapshot['total_errors']}"
        )

    # -- setup helpers ----------------------------------------------------

    def _bind_socket(self, keys: tuple[bytes, bytes] | None) -> zmq.Socket:
        sock = self.context.socket(zmq.ROUTER)
        sock.setsockopt(zmq.LINGER, 0)
        sock.setsockopt(zmq.MAXMSGSIZE, self.config.transport_max_message_bytes)
        sock.setsockopt(zmq.HEARTBEAT_IVL, int(self.config.heartbeat_interval * 1000))
        sock.setsockopt(zmq.HEARTBEAT_TIMEOUT, int(self.config.heartbeat_timeout * 1000))
        sock.setsockopt(zmq.HEARTBEAT_TTL, int(self.config.heartbeat_timeout * 1000))
        if keys is not None:
            public, secret = keys
            sock.curve_server = True
            sock.curve_publickey = public
            sock.curve_secretkey = secret
        monitor = sock.get_monitor_socket(zmq.EVENT_ACCEPTED | zmq.EVENT_DISCONNECTED)
        try:
            sock.bind(self.endpoint)
        except zmq.error.ZMQError:
            monitor.close(linger=0)
            sock.close(linger=0)
            raise
        self._monitor = monitor
        logger.info(f"ROUTER socket bound to {self.endpoint}")
        return sock

    def _abort_startup(self) -> None:
        self.channels.close_all()
        self._close_sockets()
        self._term_context()

    def _close_sockets(self) -> None:
        if self.socket is not None:
            self.socket.close(linger=0)
            self.socket = None
        if self._monitor is not None:
            self._monitor.close(linger=0)
            self._monitor = None

    def _term_context(self) -> None:
        if self._owns_context and not self.context.closed:
            self.context.term()

    # -- receive thread ---------------------------------------------------

    def _receive_loop(self) -> None:
        logger.info("Receive loop started")
        while self.running:
            try:
                if self.socket.poll(self.config.poll_timeout, zmq.POLLIN):
                    frames = self.socket.recv_multipart(zmq.NOBLOCK, copy=False)
                    self._handle_frames(frames)
            except zmq.Again:
                continue
            except zmq.ZMQError as e:
                if self.running:
                    logger.error(f"ZMQ error in receive loop: {e}")
            except Exception:
                logger.exception("Error in receive loop")
        logger.info("Receive loop ended")

    def _handle_frames(self, frames: list[Any]) -> None:
        if len(frames) < 2:
            logger.warning(f"Received incomplete message with only {len(frames)} parts")
            return
        identity = frames[0].bytes
        if self._touch_peer(identity):
            self._greet_peer(identity, frames[1])
        for frame in frames[1:]:
            payload = frame.bytes
            # Tolerate REQ-style empty delimiter frames
            if payload:
                self.router.route_payload(payload)

    def _touch_peer(self, identity: bytes) -> bool:
        """Record activity for ``identity``; True if it was not known yet."""
        with self._peers_lock:
            is_new = identity not in self._peers
            self._peers[identity] = time.monotonic()
            return is_new

    def _greet_peer(self, identity: bytes, frame: Any) -> None:
        try:
            peer = frame.get("Peer-Address")
        except (zmq.ZMQError, AttributeError, TypeError):
            peer = "unknown"
        logger.info(f"New capture client {identity.hex()} from {peer}")
        status = encode_connection_status(self.channels.all_ready, self.channels.ports())
        try:
            self.socket.send_multipart([identity, status], zmq.NOBLOCK)
        except zmq.ZMQError as e:
            logger.debug(f"Could not send connection status to {identity.hex()}: {e}")

    # -- periodic thread --------------------------------------------------

    def _periodic_loop(self) -> None:
        logger.info("Periodic loop started")
        last_status = time.monotonic()
        last_cleanup = last_status
        while self.running:
            try:
                self._drain_monitor()
                now = time.monotonic()
                if now - last_cleanup >= self.PEER_CLEANUP_INTERVAL:
                    self._cleanup_peers(now)
                    last_cleanup = now
                if now - last_status >= self.config.status_log_interval:
                    logger.info(self.telemetry.format_status(self.channels.channel_status()))
                    last_status = now
                time.sleep(self.PERIODIC_LOOP_SLEEP)
            except Exception:
                logger.exception("Error in periodic loop")
        logger.info("Periodic loop ended")

    def _drain_monitor(self) -> None:
        if self._monitor is None:
            return
        while True:
            try:
                message = recv_monitor_message(self._monitor, zmq.NOBLOCK)
            except zmq.Again:
                return
            event = message["event"]
            if event == zmq.EVENT_ACCEPTED:
                self._accepted += 1
                logger.info(f"Client connection accepted from {message.get('endpoint')!r}")
            elif event == zmq.EVENT_DISCONNECTED:
                self._disconnected += 1
                logger.info("Client disconnected")
            elif event == zmq.EVENT_MONITOR_STOPPED:
                return
            self.telemetry.set_connected_clients(self._accepted - self._disconnected)

    def _cleanup_peers(self, now: float) -> None:
        with self._peers_lock:
            stale = [
                identity
                for identity, last_seen in self._peers.items()
                if now - last_seen > self.config.client_timeout
            ]
            for identity in stale:
                del self._peers[identity]
        if stale:
            logger.info(f"Forgot {len(stale)} idle capture client(s)")


def display_banner(config: ServerConfig, overrides: list[ConfigOverride] | None = None) -> None:
    logger.info("=" * 72)
    logger.info("xr-osc-bridge relay starting")
    logger.info("=" * 72)
    logger.info(f"  Version: {get_version()}")
    logger.info(f"  Listening on: tcp://{config.bind_host}:{config.listen_port}")
    for url in network_utils.relay_urls(config.listen_port, config.bind_host):
        logger.info(f"  Capture clients can connect to: {url}")
    logger.info("  OSC routing:")
    for device in StreamId:
        logger.info(
            f"    /{device.token}/* -> "
            f"{config.destination_host(device)}:{config.destination_port(device)}"
        )
    logger.info(f"    (any other address) -> {StreamId.HMD.value}")
    logger.info(f"  OSC reconnect delay: {config.channel_reconnect_delay}s")
    logger.info(f"  Encryption: {'CURVE' if config.curve_secret_key_file else 'off'}")
    if overrides:
        logger.info("  Config overrides:")
        for override in overrides:
            logger.info(f"    {override.key}: {override.default_value!r} -> {override.new_value!r}")
    logger.info("=" * 72)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="xr-osc-bridge relay server")
    parser.add_argument("--config", type=Path, help="User TOML config file")
    parser.add_argument("--bind-host", help="Interface to listen on (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Listening port (default: 8443)")
    parser.add_argument("--osc-host", help="Host receiving OSC for every device")
    parser.add_argument("--hmd-port", type=int, help="OSC port for the HMD (default: 7400)")
    parser.add_argument(
        "--controller0-port", type=int, help="OSC port for controller 0 (default: 7401)"
    )
    parser.add_argument(
        "--controller1-port", type=int, help="OSC port for controller 1 (default: 7402)"
    )
    parser.add_argument(
        "--log-osc-messages",
        action="store_true",
        help="Log every forwarded OSC message at DEBUG level",
    )
    add_logging_arguments(parser)
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}",
        help="Show version and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config, overrides = load_config_or_exit(args, SERVER_SECTION)

    configure_logging(
        log_dir=Path(config.log_dir) if config.log_dir else None,
        role="server",
        console_level=config.log_level_console,
        console_json=config.log_json_console,
        rotation=config.log_rotation,
        retention=config.log_retention,
    )
    display_banner(config, overrides)

    server = RelayServer(config)
    try:
        server.start()
        logger.info("Relay started successfully. Press Ctrl+C to stop.")

        while True:
            try:
                time.sleep(1)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal (Ctrl+C)...")
                break

    except SystemExit:
        logger.error("Relay startup failed. Exiting...")
        raise
    except KeyboardInterrupt:
        logger.info("Received interrupt signal during startup...")
    finally:
        try:
            server.stop()
        except Exception as e:
            logger.error(f"Error during relay shutdown: {e}")
        logger.info("Relay shutdown complete.")
