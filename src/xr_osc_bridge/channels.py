"""
Per-device outbound OSC channels.

Each logical device (HMD, controller 0, controller 1) owns one python-osc
UDP client aimed at a fixed (host, port). Channels fail and recover
independently:

    CLOSED --open--> OPENING --ready--> READY
    {OPENING, READY} --error--> CLOSED  (+ one reopen timer)
    {OPENING, READY} --close--> CLOSED

There is no terminal state; only shutdown stops the reopen cycle.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pythonosc import udp_client
from pythonosc.osc_message import OscMessage
from pythonosc.osc_message_builder import BuildError, OscMessageBuilder

from .protocol import expected_arity
from .telemetry import RelayTelemetry
from .types import StreamId

logger = logging.getLogger(__name__)

DEFAULT_REOPEN_DELAY = 5.0
# Only the first few "not ready" drops per device are logged
NOT_READY_LOG_LIMIT = 5
# Largest finite IEEE 754 single-precision value
FLOAT32_MAX = 3.4028234663852886e38


class ChannelState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    READY = "ready"


class ChannelEvent(str, Enum):
    OPEN = "open"
    READY = "ready"
    ERROR = "error"
    CLOSE = "close"


class ChannelEffect(str, Enum):
    NONE = "none"
    START_OPEN = "start_open"
    SCHEDULE_REOPEN = "schedule_reopen"
    RELEASE = "release"


_TRANSITIONS: dict[tuple[ChannelState, ChannelEvent], tuple[ChannelState, ChannelEffect]] = {
    (ChannelState.CLOSED, ChannelEvent.OPEN): (ChannelState.OPENING, ChannelEffect.START_OPEN),
    (ChannelState.OPENING, ChannelEvent.READY): (ChannelState.READY, ChannelEffect.NONE),
    (ChannelState.OPENING, ChannelEvent.ERROR): (ChannelState.CLOSED, ChannelEffect.SCHEDULE_REOPEN),
    (ChannelState.READY, ChannelEvent.ERROR): (ChannelState.CLOSED, ChannelEffect.SCHEDULE_REOPEN),
    (ChannelState.OPENING, ChannelEvent.CLOSE): (ChannelState.CLOSED, ChannelEffect.RELEASE),
    (ChannelState.READY, ChannelEvent.CLOSE): (ChannelState.CLOSED, ChannelEffect.RELEASE),
}


def channel_transition(
    state: ChannelState, event: ChannelEvent
) -> tuple[ChannelState, ChannelEffect]:
    """Pure transition function; unknown pairs leave the state unchanged."""
    return _TRANSITIONS.get((state, event), (state, ChannelEffect.NONE))


@dataclass(frozen=True)
class Destination:
    host: str
    port: int


def _as_float32(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(number) or abs(number) > FLOAT32_MAX:
        return 0.0
    return number


def build_osc_message(address: str, args: Sequence[float]) -> OscMessage:
    """Build an OSC message with every argument tagged as a 32-bit float.

    Values that have no float32 representation are sent as ``0.0``.

    Raises:
        BuildError: If python-osc rejects the message.
    """
    builder = OscMessageBuilder(address=address)
    for value in args:
        builder.add_arg(_as_float32(value), OscMessageBuilder.ARG_TYPE_FLOAT)
    return builder.build()


class DeviceChannel:
    """One device's UDP client plus its connection state machine."""

    def __init__(
        self,
        device: StreamId,
        destination: Destination,
        reopen_delay: float = DEFAULT_REOPEN_DELAY,
        client_factory: Callable[[str, int], Any] = udp_client.UDPClient,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.device = device
        self.destination = destination
        self.reopen_delay = reopen_delay
        self._client_factory = client_factory
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._state = ChannelState.CLOSED
        self._client: Any = None
        self._reopen_timer: Any = None
        self._shutdown = False
        self.last_error: str | None = None
        self.open_attempts = 0

    @property
    def state(self) -> ChannelState:
        with self._lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is ChannelState.READY

    @property
    def has_error(self) -> bool:
        """True while closed because of a failure (reopen pending)."""
        with self._lock:
            return self._state is ChannelState.CLOSED and self.last_error is not None

    @property
    def reopen_pending(self) -> bool:
        with self._lock:
            return self._reopen_timer is not None

    # -- lifecycle -------------------------------------------------------

    def open(self) -> bool:
        """Try to open the channel. Returns True when it ends up READY."""
        with self._lock:
            if self._shutdown:
                return False
            if not self._apply(ChannelEvent.OPEN):
                return self._state is ChannelState.READY
            self.open_attempts += 1
            try:
                # Resolves the destination and creates the UDP socket
                client = self._client_factory(self.destination.host, self.destination.port)
            except OSError as e:
                self._fail(f"open failed: {e}")
                return False

            self._client = client
            self.last_error = None
            self._apply(ChannelEvent.READY)
            logger.info(
                f"OSC UDP port opened for {self.device.value} "
                f"-> {self.destination.host}:{self.destination.port}"
            )
            return True

    def send(self, message: OscMessage) -> bool:
        """Transmit one OSC message; False if not READY or the OS send failed."""
        with self._lock:
            if self._state is not ChannelState.READY:
                return False
            try:
                self._client.send(message)
            except OSError as e:
                self._fail(f"send failed: {e}")
                return False
            return True

    def close(self) -> None:
        """Permanent shutdown: release the client and never reopen."""
        with self._lock:
            self._shutdown = True
            self._cancel_reopen()
            if self._state is not ChannelState.CLOSED:
                self._apply(ChannelEvent.CLOSE)
            self._release_client()
        logger.info(f"OSC UDP port closed for {self.device.value}")

    # -- internals -------------------------------------------------------

    def _apply(self, event: ChannelEvent) -> bool:
        """Run one transition and its side effect. Caller holds the lock."""
        new_state, effect = channel_transition(self._state, event)
        if new_state is self._state and effect is ChannelEffect.NONE:
            return False
        logger.debug(
            f"{self.device.value} channel {self._state.value} --{event.value}--> {new_state.value}"
        )
        self._state = new_state
        if effect in (ChannelEffect.RELEASE, ChannelEffect.SCHEDULE_REOPEN):
            self._release_client()
        if effect is ChannelEffect.SCHEDULE_REOPEN:
            self._schedule_reopen()
        return True

    def _fail(self, reason: str) -> None:
        self.last_error = reason
        logger.error(f"OSC UDP port error for {self.device.value}: {reason}")
        self._apply(ChannelEvent.ERROR)

    def _schedule_reopen(self) -> None:
        if self._shutdown or self._reopen_timer is not None:
            return
        timer = self._timer_factory(self.reopen_delay, self._reopen)
        timer.daemon = True
        self._reopen_timer = timer
        timer.start()
        logger.info(f"Reconnecting OSC for {self.device.value} in {self.reopen_delay:.1f}s")

    def _reopen(self) -> None:
        with self._lock:
            self._reopen_timer = None
            if self._shutdown:
                return
        logger.info(f"Attempting to reconnect OSC for {self.device.value}...")
        self.open()

    def _cancel_reopen(self) -> None:
        if self._reopen_timer is not None:
            self._reopen_timer.cancel()
            self._reopen_timer = None

    def _release_client(self) -> None:
        # UDPClient has no close(); its socket goes with the last reference
        self._client = None


class DeviceChannelManager:
    """Owns every device channel for the lifetime of the relay process."""

    def __init__(
        self,
        destinations: dict[StreamId, Destination],
        reopen_delay: float = DEFAULT_REOPEN_DELAY,
        telemetry: RelayTelemetry | None = None,
        enforce_arity: bool = True,
        client_factory: Callable[[str, int], Any] = udp_client.UDPClient,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        missing = [d.value for d in StreamId if d not in destinations]
        if missing:
            raise ValueError(f"No destination configured for: {', '.join(missing)}")
        self.telemetry = telemetry or RelayTelemetry()
        self.enforce_arity = enforce_arity
        self._channels: dict[StreamId, DeviceChannel] = {
            device: DeviceChannel(
                device,
                destinations[device],
                reopen_delay=reopen_delay,
                client_factory=client_factory,
                timer_factory=timer_factory,
            )
            for device in StreamId
        }

    def channel(self, device: StreamId) -> DeviceChannel:
        return self._channels[device]

    def open_all(self) -> None:
        logger.info("Initializing OSC connections for all device types")
        for channel in self._channels.values():
            channel.open()

    def close_all(self) -> None:
        for channel in self._channels.values():
            channel.close()

    def state(self, device: StreamId) -> ChannelState:
        return self._channels[device].state

    @property
    def all_ready(self) -> bool:
        return all(c.is_ready for c in self._channels.values())

    def ports(self) -> dict[str, int]:
        return {d.value: c.destination.port for d, c in self._channels.items()}

    def channel_status(self) -> dict[StreamId, tuple[int, bool]]:
        return {d: (c.destination.port, c.is_ready) for d, c in self._channels.items()}

    def send(self, device: StreamId, address: str, args: Sequence[float]) -> bool:
        """Forward one message to ``device``'s destination.

        Never raises and never buffers: a closed channel or a rejected
        message simply returns False.
        """
        arity = expected_arity(address)
        if self.enforce_arity and arity is not None and len(args) != arity:
            self.telemetry.record_invalid(device)
            logger.warning(
                f"Dropping {address}: expected {arity} args, got {len(args)}"
            )
            return False

        channel = self._channels[device]
        if not channel.is_ready:
            drops = self.telemetry.record_not_ready(device)
            if drops <= NOT_READY_LOG_LIMIT:
                logger.warning(
                    f"OSC not connected for {device.value}, unable to send {address} "
                    f"(port {channel.destination.port}, state {channel.state.value})"
                )
            return False

        values = list(args)
        try:
            message = build_osc_message(address, values)
        except BuildError as e:
            self.telemetry.record_invalid(device)
            logger.warning(f"Dropping {address}: cannot encode as OSC ({e})")
            return False

        if channel.send(message):
            self.telemetry.record_forwarded(device, address, values)
            return True

        self.telemetry.record_send_error(device, channel.last_error or "send failed")
        return False
