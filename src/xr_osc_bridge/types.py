"""
Data types shared by the capture client and the relay server.

Poses use metres for position (+Y up) and scalar-last unit quaternions
(x, y, z, w) for orientation.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from .pose_math import IDENTITY_QUAT, Quat, Vec3, quat_to_euler_degrees

ZERO_VEC3: Vec3 = (0.0, 0.0, 0.0)


class StreamId(str, Enum):
    """The fixed set of tracked entities."""

    HMD = "HMD"
    CONTROLLER0 = "CONTROLLER0"
    CONTROLLER1 = "CONTROLLER1"

    @property
    def token(self) -> str:
        return self.value.lower()

    @property
    def address(self) -> str:
        return f"/{self.token}/pose"

    @property
    def has_button(self) -> bool:
        return self is not StreamId.HMD

    @property
    def arity(self) -> int:
        return 7 if self.has_button else 6

    @classmethod
    def controller(cls, index: int) -> StreamId:
        return CONTROLLER_STREAMS[index]


CONTROLLER_STREAMS: tuple[StreamId, ...] = (StreamId.CONTROLLER0, StreamId.CONTROLLER1)


def _finite_or_zero(value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


@dataclass(frozen=True)
class PoseSample:
    """One observation of a tracked entity.

    ``absent`` marks a stream with no live pose this tick. Absent samples
    carry the zero position and identity orientation.
    """

    stream_id: StreamId
    position: Vec3 = ZERO_VEC3
    orientation: Quat = IDENTITY_QUAT
    button_pressed: bool = False
    captured_at: float = 0.0
    absent: bool = False

    @classmethod
    def absent_marker(cls, stream_id: StreamId, captured_at: float = 0.0) -> PoseSample:
        return cls(stream_id=stream_id, captured_at=captured_at, absent=True)

    def euler_degrees(self) -> tuple[float, float, float]:
        """(yaw, pitch, roll) in degrees, each in (-180, 180]."""
        return quat_to_euler_degrees(self.orientation)

    def to_args(self) -> list[float]:
        """Wire arguments: x, y, z, yaw, pitch, roll [, button]."""
        yaw, pitch, roll = self.euler_degrees()
        args = [_finite_or_zero(v) for v in self.position]
        args += [_finite_or_zero(yaw), _finite_or_zero(pitch), _finite_or_zero(roll)]
        if self.stream_id.has_button:
            args.append(1.0 if self.button_pressed else 0.0)
        return args


@dataclass(frozen=True)
class WireMessage:
    """The unit exchanged over the transport channel."""

    address: str
    args: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class TrackedPose:
    """Position + orientation as reported by the capture device."""

    position: Vec3 = ZERO_VEC3
    orientation: Quat = IDENTITY_QUAT


@dataclass(frozen=True)
class InputSourceSnapshot:
    """One controller as seen in a single rendered frame."""

    grip: TrackedPose | None = None
    buttons: Sequence[bool] = ()


@dataclass(frozen=True)
class FrameSnapshot:
    """Everything the frame callback hands to the sampler for one frame."""

    viewer: TrackedPose | None = None
    input_sources: Sequence[InputSourceSnapshot] = ()
