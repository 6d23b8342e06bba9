"""Relay counters for observability.

Everything here is read-only from the relay's point of view: recording a
value never changes routing or channel behaviour.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .types import StreamId

logger = logging.getLogger(__name__)

BUTTON_ARG_INDEX = 6
UNKNOWN_ADDRESS_MEMORY = 64


@dataclass
class DeviceCounters:
    forwarded: int = 0
    send_errors: int = 0
    dropped_not_ready: int = 0
    dropped_invalid: int = 0
    last_forward_time: float = 0.0


class RelayTelemetry:
    """Thread-safe per-device and global message/error counters."""

    def __init__(
        self,
        log_every_message: bool = False,
        log_sample_rate: float = 0.001,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self._rng = rng
        self.log_every_message = log_every_message
        self.log_sample_rate = log_sample_rate

        self._started_at = clock()
        self._devices: dict[StreamId, DeviceCounters] = {
            device: DeviceCounters() for device in StreamId
        }
        self._button_states: dict[StreamId, bool] = {}
        self._unknown_addresses: set[str] = set()
        self.total_messages = 0
        self.total_errors = 0
        self.oversized_payloads = 0
        self.malformed_envelopes = 0
        self.connected_clients = 0
        self.last_error: str | None = None

    # -- recording -------------------------------------------------------

    def record_forwarded(self, device: StreamId, address: str, args: list[float]) -> None:
        with self._lock:
            counters = self._devices[device]
            counters.forwarded += 1
            counters.last_forward_time = self._clock()
            self.total_messages += 1
            total = self.total_messages
            pressed = None
            if device.has_button and len(args) > BUTTON_ARG_INDEX:
                pressed = bool(args[BUTTON_ARG_INDEX])
                changed = self._button_states.get(device) != pressed
                self._button_states[device] = pressed
                if not changed:
                    pressed = None

        if pressed is not None:
            logger.debug(f"{device.value} button state: {'Pressed' if pressed else 'Released'}")
        if self.log_every_message or self._rng() < self.log_sample_rate:
            logger.debug(
                f"OSC sent to {device.value}: {address} args={args[:3]} total={total}"
            )

    def record_send_error(self, device: StreamId, error: str) -> None:
        with self._lock:
            self._devices[device].send_errors += 1
            self.total_errors += 1
            self.last_error = error

    def record_not_ready(self, device: StreamId) -> int:
        """Count a drop on a closed channel; returns that device's drop count."""
        with self._lock:
            counters = self._devices[device]
            counters.dropped_not_ready += 1
            return counters.dropped_not_ready

    def record_invalid(self, device: StreamId) -> None:
        with self._lock:
            self._devices[device].dropped_invalid += 1

    def record_oversized(self) -> None:
        with self._lock:
            self.oversized_payloads += 1

    def record_malformed(self) -> None:
        with self._lock:
            self.malformed_envelopes += 1

    def record_unknown_address(self, address: str) -> bool:
        """Remember a non-grammar address; True the first time it is seen."""
        with self._lock:
            if address in self._unknown_addresses:
                return False
            if len(self._unknown_addresses) < UNKNOWN_ADDRESS_MEMORY:
                self._unknown_addresses.add(address)
            return True

    def set_connected_clients(self, count: int) -> None:
        with self._lock:
            self.connected_clients = max(0, count)

    # -- reading ---------------------------------------------------------

    def device(self, device: StreamId) -> DeviceCounters:
        with self._lock:
            return DeviceCounters(**asdict(self._devices[device]))

    def uptime(self) -> float:
        return self._clock() - self._started_at

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            uptime = self._clock() - self._started_at
            return {
                "uptime": uptime,
                "total_messages": self.total_messages,
                "total_errors": self.total_errors,
                "messages_per_second": round(self.total_messages / uptime) if uptime > 0 else 0,
                "last_error": self.last_error,
                "oversized_payloads": self.oversized_payloads,
                "malformed_envelopes": self.malformed_envelopes,
                "connected_clients": self.connected_clients,
                "devices": {d.value: asdict(c) for d, c in self._devices.items()},
            }

    def format_status(self, channel_status: dict[StreamId, tuple[int, bool]]) -> str:
        """One-line summary; ``channel_status`` maps device -> (port, ready)."""
        snap = self.snapshot()
        connections = ", ".join(
            f"{device.value}:{port}={'OK' if ready else 'FAIL'}"
            for device, (port, ready) in channel_status.items()
        )
        per_device = ", ".join(
            f"{name}={c['forwarded']}" for name, c in snap["devices"].items()
        )
        return (
            f"Status: uptime={int(snap['uptime'])}s, clients={snap['connected_clients']}, "
            f"connections=[{connections}], messages={snap['total_messages']} "
            f"({snap['messages_per_second']}/s), errors={snap['total_errors']}, "
            f"last_error={snap['last_error']}, per_device=[{per_device}]"
        )
