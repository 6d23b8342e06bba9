"""
Simulated capture source.

Stands in for the headset: a movement pattern moves the head and both
controllers, feeding the preview state (clock-driven regime) or frame
snapshots (frame-driven regime) of a :class:`CaptureClient`.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .pose_math import Vec3, euler_degrees_to_quat
from .types import FrameSnapshot, InputSourceSnapshot, StreamId, TrackedPose

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from .client import CaptureClient


class MovementPattern(str, Enum):
    """Available movement patterns for the simulated wearer."""

    CIRCLE = "circle"
    FIGURE8 = "figure8"
    PING_PONG = "ping_pong"
    STATIC = "static"


@dataclass
class SimulationConfig:
    pattern: MovementPattern = MovementPattern.CIRCLE
    center: Vec3 = (0.0, 1.6, 0.0)
    move_speed: float = 0.5
    movement_radius: float = 1.0
    hand_swing_amplitude: float = 0.15
    hand_swing_speed: float = 3.0
    button_period: float = 2.0
    # Controller 1 loses tracking for ``dropout_duration`` every ``dropout_period`` s
    dropout_period: float = 10.0
    dropout_duration: float = 1.0


class MovementStrategy(ABC):
    """Head position over time; yaw follows the direction of travel."""

    def __init__(self, config: SimulationConfig):
        self.config = config

    @abstractmethod
    def position(self, elapsed: float) -> Vec3:
        """Head position ``elapsed`` seconds into the simulation."""

    def heading(self, elapsed: float, dt: float = 0.05) -> float:
        """Yaw in degrees facing the movement direction (0 when standing still)."""
        x0, _, z0 = self.position(max(0.0, elapsed - dt))
        x1, _, z1 = self.position(elapsed)
        dx, dz = x1 - x0, z1 - z0
        if math.hypot(dx, dz) < 1e-6:
            return 0.0
        # Headset forward is -Z
        return math.degrees(math.atan2(-dx, -dz))


class CircleMovement(MovementStrategy):
    def position(self, elapsed: float) -> Vec3:
        cx, cy, cz = self.config.center
        angle = elapsed * self.config.move_speed
        r = self.config.movement_radius
        return (cx + math.cos(angle) * r, cy, cz + math.sin(angle) * r)


class Figure8Movement(MovementStrategy):
    def position(self, elapsed: float) -> Vec3:
        cx, cy, cz = self.config.center
        t = elapsed * self.config.move_speed
        r = self.config.movement_radius
        return (cx + math.sin(t) * r, cy, cz + math.sin(2 * t) * r * 0.5)


class PingPongMovement(MovementStrategy):
    def position(self, elapsed: float) -> Vec3:
        cx, cy, cz = self.config.center
        offset = math.sin(elapsed * self.config.move_speed) * self.config.movement_radius
        return (cx, cy, cz + offset)


class StaticMovement(MovementStrategy):
    def position(self, elapsed: float) -> Vec3:
        return self.config.center


class MovementStrategyFactory:
    _strategies: dict[MovementPattern, type[MovementStrategy]] = {
        MovementPattern.CIRCLE: CircleMovement,
        MovementPattern.FIGURE8: Figure8Movement,
        MovementPattern.PING_PONG: PingPongMovement,
        MovementPattern.STATIC: StaticMovement,
    }

    @classmethod
    def create(cls, pattern: MovementPattern | str, config: SimulationConfig) -> MovementStrategy:
        strategy_class = cls._strategies.get(MovementPattern(pattern))
        if strategy_class is None:
            raise ValueError(f"Unknown movement pattern: {pattern}")
        return strategy_class(config)


class PoseGenerator:
    """Head and controller poses for a given simulation time."""

    def __init__(self, config: SimulationConfig | None = None):
        self.config = config or SimulationConfig()
        self.strategy = MovementStrategyFactory.create(self.config.pattern, self.config)

    def head(self, elapsed: float) -> TrackedPose:
        yaw = self.strategy.heading(elapsed)
        pitch = math.sin(elapsed * 0.7) * 10.0
        return TrackedPose(self.strategy.position(elapsed), euler_degrees_to_quat(yaw, pitch, 0.0))

    def controller(self, index: int, elapsed: float) -> TrackedPose:
        hx, hy, hz = self.strategy.position(elapsed)
        yaw = self.strategy.heading(elapsed)
        side = 1.0 if index == 0 else -1.0
        phase = 0.0 if index == 0 else math.pi
        amp = self.config.hand_swing_amplitude
        speed = self.config.hand_swing_speed

        lateral = side * 0.25 + math.sin(elapsed * speed + phase) * amp
        vertical = -0.45 + math.cos(elapsed * speed * 0.7 + phase) * amp * 0.5
        forward = -0.3 + math.sin(elapsed * speed * 1.3 + phase) * amp * 0.3

        # Rotate the body-relative offset by the head yaw
        yaw_rad = math.radians(yaw)
        cos_y, sin_y = math.cos(yaw_rad), math.sin(yaw_rad)
        dx = lateral * cos_y + forward * sin_y
        dz = -lateral * sin_y + forward * cos_y
        roll = math.sin(elapsed * speed + phase) * 20.0
        return TrackedPose((hx + dx, hy + vertical, hz + dz), euler_degrees_to_quat(yaw, -30.0, roll))

    def button_pressed(self, index: int, elapsed: float) -> bool:
        period = self.config.button_period
        phase = (elapsed / period + (0.5 if index else 0.0)) % 1.0
        return phase < 0.25

    def controller_tracked(self, index: int, elapsed: float) -> bool:
        if index != 1 or self.config.dropout_period <= 0:
            return True
        return (elapsed % self.config.dropout_period) >= self.config.dropout_duration

    def frame(self, elapsed: float) -> FrameSnapshot:
        sources = []
        for index in range(2):
            grip = self.controller(index, elapsed) if self.controller_tracked(index, elapsed) else None
            buttons = [self.button_pressed(index, elapsed)] + [False] * 5
            sources.append(InputSourceSnapshot(grip=grip, buttons=buttons))
        return FrameSnapshot(viewer=self.head(elapsed), input_sources=sources)

    def update_preview(self, client: CaptureClient, elapsed: float) -> None:
        preview = client.preview
        preview.set_pose(StreamId.HMD, self.head(elapsed))
        for index, stream_id in enumerate((StreamId.CONTROLLER0, StreamId.CONTROLLER1)):
            preview.set_pose(stream_id, self.controller(index, elapsed), False)


class CaptureSimulator:
    """Runs a :class:`PoseGenerator` against a client on a background thread.

    Outside a session the preview state is refreshed; inside one, frame
    snapshots are delivered at ``frame_rate_hz``. With ``session_cycle`` > 0
    the simulator enters and leaves an immersive session every
    ``session_cycle`` seconds.
    """

    PREVIEW_UPDATE_HZ = 60.0

    def __init__(
        self,
        client: CaptureClient,
        generator: PoseGenerator | None = None,
        frame_rate_hz: float = 72.0,
        session_cycle: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.generator = generator or PoseGenerator()
        self.frame_rate_hz = frame_rate_hz
        self.session_cycle = session_cycle
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started_at = 0.0
        self.frames = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._started_at = self._clock()
        self.generator.update_preview(self.client, 0.0)
        self._thread = threading.Thread(target=self._run, name="CaptureSimulator", daemon=True)
        self._thread.start()
        logger.info(
            f"Simulated capture started (pattern={self.generator.config.pattern.value}, "
            f"session_cycle={self.session_cycle}s)"
        )

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self.client.in_session:
            self.client.end_session()

    def step(self, elapsed: float) -> None:
        """Advance the simulation to ``elapsed`` seconds."""
        if self.session_cycle > 0:
            want_session = int(elapsed // self.session_cycle) % 2 == 1
            if want_session and not self.client.in_session:
                self.client.begin_session()
            elif not want_session and self.client.in_session:
                self.client.end_session()

        if self.client.in_session:
            self.client.on_frame(self.generator.frame(elapsed))
            self.frames += 1
        else:
            self.generator.update_preview(self.client, elapsed)

    def _run(self) -> None:
        while not self._stop.is_set():
            elapsed = self._clock() - self._started_at
            try:
                self.step(elapsed)
            except Exception:
                logger.exception("Simulated capture step failed")
            rate = self.frame_rate_hz if self.client.in_session else self.PREVIEW_UPDATE_HZ
            self._stop.wait(1.0 / rate)
