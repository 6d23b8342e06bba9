"""Operator-facing status view for the capture client."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass

from .types import PoseSample, StreamId

NOT_AVAILABLE = "N/A"

STATUS_CONNECTED = "Connected"
STATUS_RETRYING = "Disconnected. Retrying..."
STATUS_ERROR = "Error"
STATUS_NO_SERVER = "Error: Server URL not set"
STATUS_CONNECTING = "Connecting..."


@dataclass
class StreamDisplay:
    position: str = NOT_AVAILABLE
    rotation: str = NOT_AVAILABLE
    button: str = NOT_AVAILABLE


def format_position(sample: PoseSample) -> str:
    x, y, z = sample.position
    return f"{x:.2f}, {y:.2f}, {z:.2f}"


def format_rotation(sample: PoseSample) -> str:
    yaw, pitch, roll = sample.euler_degrees()
    return f"{yaw:.1f}°, {pitch:.1f}°, {roll:.1f}°"


def format_button(pressed: bool) -> str:
    return "Pressed" if pressed else "Released"


class StatusBoard:
    """Thread-safe text model of what the operator sees."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connection = STATUS_CONNECTING
        self._relay_osc = NOT_AVAILABLE
        self._message = ""
        self._streaming = False
        self._streams: dict[StreamId, StreamDisplay] = {s: StreamDisplay() for s in StreamId}

    @property
    def connection(self) -> str:
        with self._lock:
            return self._connection

    @property
    def message(self) -> str:
        with self._lock:
            return self._message

    def set_connection(self, text: str) -> None:
        with self._lock:
            self._connection = text

    def set_relay_osc_status(self, text: str) -> None:
        with self._lock:
            self._relay_osc = text

    def set_streaming(self, enabled: bool) -> None:
        with self._lock:
            self._streaming = enabled

    def announce(self, text: str) -> None:
        with self._lock:
            self._message = text

    def update_samples(self, samples: Iterable[PoseSample]) -> None:
        with self._lock:
            for sample in samples:
                display = self._streams[sample.stream_id]
                if sample.absent and not sample.stream_id.has_button:
                    display.position = NOT_AVAILABLE
                    display.rotation = NOT_AVAILABLE
                    continue
                display.position = format_position(sample)
                display.rotation = format_rotation(sample)
                if sample.stream_id.has_button:
                    display.button = format_button(sample.button_pressed)

    def reset_poses(self) -> None:
        with self._lock:
            self._streams = {s: StreamDisplay() for s in StreamId}

    def stream(self, stream_id: StreamId) -> StreamDisplay:
        with self._lock:
            d = self._streams[stream_id]
            return StreamDisplay(d.position, d.rotation, d.button)

    def render(self) -> str:
        with self._lock:
            lines = [
                f"Connection: {self._connection} (relay OSC: {self._relay_osc})",
                f"Streaming: {'on' if self._streaming else 'off'}",
            ]
            for stream_id, d in self._streams.items():
                line = f"  {stream_id.value:<12} pos=[{d.position}] rot=[{d.rotation}]"
                if stream_id.has_button:
                    line += f" button={d.button}"
                lines.append(line)
            if self._message:
                lines.append(f"Message: {self._message}")
        return "\n".join(lines)
