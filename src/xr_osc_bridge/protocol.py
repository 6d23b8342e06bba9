"""
Wire format for the capture client -> relay leg.

One message per frame: a UTF-8 JSON object ``{"address": str, "args": [..]}``.
The relay answers a new peer once with a ``{"type": "connection", ...}``
status object.
"""

from __future__ import annotations

import json
import re
from typing import Any

from .types import PoseSample, StreamId, WireMessage

MAX_PAYLOAD_BYTES = 512

ADDRESS_PATTERN = re.compile(r"^/(hmd|controller[01])/pose$")

_ARITY_BY_ADDRESS: dict[str, int] = {s.address: s.arity for s in StreamId}


class ProtocolError(ValueError):
    """Raised for envelopes that cannot be interpreted at all."""


def expected_arity(address: str) -> int | None:
    """Arity fixed by the address grammar, or None for unknown addresses."""
    return _ARITY_BY_ADDRESS.get(address)


def is_known_address(address: str) -> bool:
    return ADDRESS_PATTERN.match(address) is not None


def build_pose_message(sample: PoseSample) -> WireMessage:
    return WireMessage(address=sample.stream_id.address, args=sample.to_args())


def encode_message(message: WireMessage) -> bytes:
    envelope = {"address": message.address, "args": list(message.args)}
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def decode_envelope(payload: bytes, max_bytes: int = MAX_PAYLOAD_BYTES) -> dict[str, Any]:
    """Parse one inbound payload into a dict.

    Structural checks on ``address``/``args`` are left to the router; this
    only guarantees the payload is a size-bounded JSON object.

    Raises:
        ProtocolError: payload oversized, not UTF-8, not JSON or not an object.
    """
    if len(payload) > max_bytes:
        raise ProtocolError(f"oversized payload ({len(payload)} > {max_bytes} bytes)")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"payload is not UTF-8: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"payload is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"envelope must be an object, got {type(data).__name__}")
    return data


def encode_connection_status(osc_ready: bool, osc_ports: dict[str, int]) -> bytes:
    status = {
        "type": "connection",
        "status": "connected",
        "oscStatus": "ready" if osc_ready else "connecting",
        "oscPorts": dict(osc_ports),
    }
    return json.dumps(status, separators=(",", ":")).encode("utf-8")


def decode_server_notice(payload: bytes) -> dict[str, Any] | None:
    """Best-effort parse of a relay -> client notice; None if unusable."""
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None
