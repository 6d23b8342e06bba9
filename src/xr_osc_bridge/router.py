"""
Inbound message routing for the relay.

The router is stateless: it validates one decoded envelope, keeps only its
finite numeric arguments, classifies the target device from the address
prefix and hands the result to the channel manager. It never blocks.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from .channels import DeviceChannelManager
from .protocol import MAX_PAYLOAD_BYTES, ProtocolError, decode_envelope, is_known_address
from .telemetry import RelayTelemetry
from .types import StreamId

logger = logging.getLogger(__name__)

_PREFIX_RULES: tuple[tuple[str, StreamId], ...] = (
    ("/hmd", StreamId.HMD),
    ("/controller0", StreamId.CONTROLLER0),
    ("/controller1", StreamId.CONTROLLER1),
)


def classify_address(address: str) -> StreamId:
    """Map an address onto a device by prefix.

    Unrecognised addresses fall back to HMD. This mirrors the deployed
    relay; it looks like an accidental default rather than a feature.
    """
    for prefix, device in _PREFIX_RULES:
        if address.startswith(prefix):
            return device
    return StreamId.HMD


def _finite_float(value: Any) -> float | None:
    """``value`` as a finite float, or None when it is not a usable number."""
    # bool is an int subclass but never a pose component
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        # JSON integers are unbounded
        return None
    return number if math.isfinite(number) else None


def filter_numeric_args(args: list[Any]) -> list[float]:
    """Keep the finite numbers of ``args`` in order, as floats."""
    numbers = (_finite_float(a) for a in args)
    return [n for n in numbers if n is not None]


@dataclass(frozen=True)
class RouteResult:
    accepted: bool
    device: StreamId | None = None
    address: str | None = None
    args: list[float] = field(default_factory=list)
    dropped_args: int = 0
    forwarded: bool = False
    reason: str | None = None


class MessageRouter:
    """Validate -> filter -> classify -> dispatch."""

    def __init__(
        self,
        channels: DeviceChannelManager,
        telemetry: RelayTelemetry | None = None,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ):
        self.channels = channels
        self.telemetry = telemetry or channels.telemetry
        self.max_payload_bytes = max_payload_bytes

    def route_payload(self, payload: bytes) -> RouteResult:
        """Decode raw transport bytes and route them."""
        try:
            envelope = decode_envelope(payload, self.max_payload_bytes)
        except ProtocolError as e:
            if len(payload) > self.max_payload_bytes:
                self.telemetry.record_oversized()
                logger.warning(f"Received oversized message ({len(payload)} bytes), discarded")
            else:
                self.telemetry.record_malformed()
                logger.error(
                    f"Message processing error: {e} "
                    f"(preview: {payload[:100].decode('utf-8', errors='replace')!r})"
                )
            return RouteResult(accepted=False, reason=str(e))
        return self.route(envelope)

    def route(self, message: Any) -> RouteResult:
        if not isinstance(message, dict):
            logger.warning(f"Invalid message received: {type(message).__name__}")
            return RouteResult(accepted=False, reason="message is not an object")

        address = message.get("address")
        if not isinstance(address, str) or not address:
            logger.warning(f"Invalid OSC address received: {address!r}")
            return RouteResult(accepted=False, reason="address is not a string")

        raw_args = message.get("args")
        if not isinstance(raw_args, list):
            logger.warning(f"Invalid OSC args received for {address}: {raw_args!r}")
            return RouteResult(accepted=False, address=address, reason="args is not a sequence")

        args = filter_numeric_args(raw_args)
        dropped = len(raw_args) - len(args)
        if dropped:
            logger.warning(
                f"Some OSC args were invalid and filtered: {address} "
                f"original={len(raw_args)} valid={len(args)}"
            )

        device = classify_address(address)
        if not is_known_address(address) and self.telemetry.record_unknown_address(address):
            logger.warning(f"Unrecognised address {address} routed to {device.value} by default")

        forwarded = self.channels.send(device, address, args)
        if not forwarded:
            logger.debug(f"Failed to forward {address} ({len(args)} args) to {device.value}")

        return RouteResult(
            accepted=True,
            device=device,
            address=address,
            args=args,
            dropped_args=dropped,
            forwarded=forwarded,
        )
