"""
Capture client: sampler -> throttled publisher -> reconnecting transport.

The capture device itself is external. A host feeds the client through
``preview`` (clock-driven regime) or ``on_frame`` (during an immersive
session); ``xr-osc-bridge-client`` does so with the simulated source.
"""

from __future__ import annotations

import argparse
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .config import (
    CLIENT_SECTION,
    MOVEMENT_PATTERNS,
    ClientConfig,
    add_logging_arguments,
    get_version,
    load_config_or_exit,
    load_default_config,
)
from .logging_utils import configure_logging
from .publisher import ThrottledPublisher
from .sampler import PoseSampler, PreviewState
from .simulator import CaptureSimulator, MovementPattern, PoseGenerator, SimulationConfig
from .status import (
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_ERROR,
    STATUS_NO_SERVER,
    STATUS_RETRYING,
    StatusBoard,
)
from .transport import ReconnectingTransport
from .types import FrameSnapshot, PoseSample

logger = logging.getLogger(__name__)

MSG_STREAMING_ENABLED = "OSC Streaming Enabled."
MSG_STREAMING_DISABLED = "OSC Streaming Disabled."
MSG_TOGGLE_IN_SESSION = "OSC streaming cannot be toggled during an immersive session."
MSG_SESSION_ENDED = "Immersive session ended."


def build_transport(config: ClientConfig) -> ReconnectingTransport:
    return ReconnectingTransport(
        endpoint=config.endpoint,
        reconnect_delay=config.reconnect_delay,
        connect_timeout=config.connect_timeout,
        max_inbound_bytes=config.max_inbound_bytes,
        heartbeat_interval=config.heartbeat_interval,
        heartbeat_timeout=config.heartbeat_timeout,
        curve_server_public_key_file=config.curve_server_public_key_file,
    )


class CaptureClient:
    """Wires the client-side pipeline and the operator status board."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        transport: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or load_default_config(CLIENT_SECTION)
        self.status = StatusBoard()
        self.transport = transport if transport is not None else build_transport(self.config)
        self.publisher = ThrottledPublisher(
            self.transport,
            interval=self.config.send_interval,
            enabled=self.config.streaming_enabled,
            clock=clock,
        )
        self.sampler = PoseSampler(
            sample_rate_hz=self.config.sample_rate_hz,
            monitored_button_count=self.config.monitored_button_count,
            clock=clock,
        )
        self.status.set_streaming(self.publisher.enabled)

        self.sampler.on_samples.add_listener(self._on_samples)
        self.sampler.on_session_ended.add_listener(self._on_session_ended)
        self.transport.on_opened.add_listener(self._on_opened)
        self.transport.on_closed.add_listener(self._on_closed)
        self.transport.on_failed.add_listener(self._on_failed)
        self.transport.on_notice.add_listener(self._on_notice)

    @property
    def preview(self) -> PreviewState:
        return self.sampler.preview

    @property
    def in_session(self) -> bool:
        return self.sampler.in_session

    @property
    def streaming_enabled(self) -> bool:
        return self.publisher.enabled

    def start(self) -> None:
        self.sampler.start()
        endpoint = self.config.endpoint
        if not endpoint:
            self.status.set_connection(STATUS_NO_SERVER)
            logger.error("Relay address is not configured; streaming is unavailable")
            return
        self.status.set_connection(STATUS_CONNECTING)
        self.transport.connect(endpoint)

    def stop(self) -> None:
        self.sampler.stop()
        self.transport.stop()

    # -- operator actions -------------------------------------------------

    def set_streaming(self, enabled: bool) -> bool:
        """Enable or disable streaming. Refused while a session is active."""
        if self.sampler.in_session:
            logger.warning(MSG_TOGGLE_IN_SESSION)
            self.status.announce(MSG_TOGGLE_IN_SESSION)
            return False
        self.publisher.enabled = enabled
        message = MSG_STREAMING_ENABLED if enabled else MSG_STREAMING_DISABLED
        self.status.set_streaming(enabled)
        self.status.announce(message)
        logger.info(message)
        return True

    def toggle_streaming(self) -> bool:
        return self.set_streaming(not self.publisher.enabled)

    def begin_session(self) -> bool:
        return self.sampler.begin_session()

    def end_session(self) -> bool:
        return self.sampler.end_session()

    def on_frame(self, frame: FrameSnapshot) -> list[PoseSample]:
        return self.sampler.on_frame(frame)

    # -- listeners --------------------------------------------------------

    def _on_samples(self, samples: list[PoseSample]) -> None:
        self.status.update_samples(samples)
        now = samples[0].captured_at if samples else None
        self.publisher.publish_tick(samples, now)

    def _on_session_ended(self) -> None:
        self.status.reset_poses()
        self.status.announce(MSG_SESSION_ENDED)

    def _on_opened(self) -> None:
        self.status.set_connection(STATUS_CONNECTED)

    def _on_closed(self, code: int, reason: str) -> None:
        self.status.set_connection(STATUS_RETRYING)

    def _on_failed(self, error: str) -> None:
        self.status.set_connection(STATUS_ERROR)

    def _on_notice(self, notice: dict[str, Any]) -> None:
        if notice.get("type") != "connection":
            logger.debug(f"Ignoring relay notice of type {notice.get('type')!r}")
            return
        osc_status = str(notice.get("oscStatus", "unknown"))
        self.status.set_relay_osc_status(osc_status)
        logger.info(f"Relay reports OSC {osc_status}, ports {notice.get('oscPorts')}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="xr-osc-bridge capture client (simulated capture source)"
    )
    parser.add_argument("--config", type=Path, help="User TOML config file")
    parser.add_argument("--server", help="Relay host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Relay port (default: 8443)")
    parser.add_argument(
        "--enable-streaming", action="store_true", help="Start with OSC streaming enabled"
    )
    parser.add_argument("--pattern", choices=MOVEMENT_PATTERNS, help="Simulated movement pattern")
    parser.add_argument(
        "--session-cycle",
        type=float,
        help="Enter/leave a simulated immersive session every N seconds (0 = never)",
    )
    parser.add_argument(
        "--duration", type=float, default=0.0, help="Stop after N seconds (default: run forever)"
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
    config, _ = load_config_or_exit(args, CLIENT_SECTION)

    configure_logging(
        log_dir=Path(config.log_dir) if config.log_dir else None,
        role="client",
        console_level=config.log_level_console,
        console_json=config.log_json_console,
        rotation=config.log_rotation,
        retention=config.log_retention,
    )
    logger.info(f"xr-osc-bridge capture client {get_version()} -> {config.endpoint or '(unset)'}")

    client = CaptureClient(config)
    simulator = CaptureSimulator(
        client,
        PoseGenerator(SimulationConfig(pattern=MovementPattern(config.movement_pattern))),
        frame_rate_hz=config.frame_rate_hz,
        session_cycle=config.session_cycle,
    )

    started = time.monotonic()
    last_status = started
    try:
        client.start()
        simulator.start()
        logger.info("Capture client running. Press Ctrl+C to stop.")
        while True:
            try:
                time.sleep(0.25)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal (Ctrl+C)...")
                break
            now = time.monotonic()
            if now - last_status >= config.status_interval:
                logger.info("\n" + client.status.render())
                last_status = now
            if args.duration and now - started >= args.duration:
                logger.info(f"Run duration of {args.duration}s reached")
                break
    finally:
        simulator.stop()
        client.stop()
        logger.info("Capture client stopped.")
