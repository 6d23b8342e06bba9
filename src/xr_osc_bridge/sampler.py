"""
Pose sampling under two mutually exclusive timing regimes.

CLOCK: a fixed-rate ticker reads the preview state (no immersive session).
FRAME: the host's per-frame callback drives sampling during a session.

Mode changes and both sampling entry points share one lock, so a clock
tick that races with ``begin_session`` is dropped rather than published
next to a frame-driven sample.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum

from .events import EventHandler
from .types import (
    CONTROLLER_STREAMS,
    FrameSnapshot,
    PoseSample,
    StreamId,
    TrackedPose,
)

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE_HZ = 60.0
DEFAULT_MONITORED_BUTTONS = 6


class SamplingMode(str, Enum):
    CLOCK = "clock"
    FRAME = "frame"


def any_button_pressed(buttons: Sequence[bool], monitored: int = DEFAULT_MONITORED_BUTTONS) -> bool:
    return any(bool(b) for b in list(buttons)[:monitored])


class PreviewState:
    """Last known transform per stream while no session is running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._poses: dict[StreamId, tuple[TrackedPose, bool]] = {}

    def set_pose(self, stream_id: StreamId, pose: TrackedPose, button_pressed: bool = False) -> None:
        with self._lock:
            self._poses[stream_id] = (pose, button_pressed)

    def clear(self, stream_id: StreamId | None = None) -> None:
        with self._lock:
            if stream_id is None:
                self._poses.clear()
            else:
                self._poses.pop(stream_id, None)

    def get(self, stream_id: StreamId) -> tuple[TrackedPose, bool] | None:
        with self._lock:
            return self._poses.get(stream_id)


class ClockTicker:
    """Background thread calling ``callback(now)`` at a fixed rate.

    While suspended the thread sleeps on a condition. ``resume`` makes the
    next tick due immediately.
    """

    def __init__(
        self,
        rate_hz: float,
        callback: Callable[[float], object],
        clock: Callable[[], float] = time.monotonic,
        name: str = "ClockTicker",
    ):
        if rate_hz <= 0:
            raise ValueError(f"rate_hz must be positive, got {rate_hz}")
        self.period = 1.0 / rate_hz
        self._callback = callback
        self._clock = clock
        self._name = name
        self._cond = threading.Condition()
        self._running = False
        self._suspended = False
        self._next_due = 0.0
        self._thread: threading.Thread | None = None
        self.tick_count = 0
        self.resume_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def suspended(self) -> bool:
        with self._cond:
            return self._suspended

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._next_due = self._clock()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        with self._cond:
            self._running = False
            self._cond.notify_all()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._thread = None

    def suspend(self) -> bool:
        with self._cond:
            if self._suspended:
                return False
            self._suspended = True
            self._cond.notify_all()
            return True

    def resume(self) -> bool:
        with self._cond:
            if not self._suspended:
                return False
            self._suspended = False
            self._next_due = self._clock()
            self.resume_count += 1
            self._cond.notify_all()
            return True

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._running and self._suspended:
                    self._cond.wait()
                if not self._running:
                    return
                now = self._clock()
                delay = self._next_due - now
                if delay > 0:
                    self._cond.wait(delay)
                    continue
                self._next_due += self.period
                if self._next_due < now:
                    # Fell behind; skip missed ticks instead of bursting
                    self._next_due = now + self.period
                self.tick_count += 1
            try:
                self._callback(now)
            except Exception:
                logger.exception(f"{self._name} callback raised")


class PoseSampler:
    """Produces at most one :class:`PoseSample` per stream per tick.

    Samples are delivered to ``on_samples`` listeners as a list, one call
    per tick. ``on_session_ended`` fires once when an immersive session
    ends, before clock-driven sampling resumes.
    """

    def __init__(
        self,
        preview: PreviewState | None = None,
        sample_rate_hz: float = DEFAULT_SAMPLE_RATE_HZ,
        monitored_button_count: int = DEFAULT_MONITORED_BUTTONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.preview = preview or PreviewState()
        self.monitored_button_count = monitored_button_count
        self._clock = clock
        self._lock = threading.RLock()
        self._mode = SamplingMode.CLOCK
        self.ticker = ClockTicker(sample_rate_hz, self.on_clock_tick, clock=clock, name="SamplerClock")

        self.on_samples = EventHandler("samples")
        self.on_session_ended = EventHandler("session_ended")

        self.frame_ticks = 0
        self.clock_ticks = 0
        self.dropped_clock_ticks = 0

    @property
    def mode(self) -> SamplingMode:
        with self._lock:
            return self._mode

    @property
    def in_session(self) -> bool:
        return self.mode is SamplingMode.FRAME

    def start(self) -> None:
        """Start clock-driven sampling."""
        self.ticker.start()

    def stop(self) -> None:
        self.ticker.stop()

    # -- regime switching -------------------------------------------------

    def begin_session(self) -> bool:
        """Enter the frame-driven regime. False if a session is already active."""
        with self._lock:
            if self._mode is SamplingMode.FRAME:
                return False
            self._mode = SamplingMode.FRAME
            self.ticker.suspend()
        logger.info("Immersive session started; clock-driven sampling suspended")
        return True

    def end_session(self) -> bool:
        """Leave the frame-driven regime and resume the clock exactly once."""
        with self._lock:
            if self._mode is not SamplingMode.FRAME:
                return False
            self._mode = SamplingMode.CLOCK
            self.on_session_ended.invoke()
            self.ticker.resume()
        logger.info("Immersive session ended; clock-driven sampling resumed")
        return True

    # -- sampling ---------------------------------------------------------

    def on_clock_tick(self, now: float | None = None) -> list[PoseSample]:
        now = self._clock() if now is None else now
        with self._lock:
            if self._mode is not SamplingMode.CLOCK:
                self.dropped_clock_ticks += 1
                return []
            samples = self.sample_preview(now)
            self.clock_ticks += 1
            if samples:
                self.on_samples.invoke(samples)
            return samples

    def on_frame(self, frame: FrameSnapshot, now: float | None = None) -> list[PoseSample]:
        now = self._clock() if now is None else now
        with self._lock:
            if self._mode is not SamplingMode.FRAME:
                return []
            samples = self.sample_frame(frame, now)
            self.frame_ticks += 1
            self.on_samples.invoke(samples)
            return samples

    def sample_preview(self, now: float) -> list[PoseSample]:
        samples = []
        for stream_id in StreamId:
            entry = self.preview.get(stream_id)
            if entry is None:
                continue
            pose, pressed = entry
            samples.append(self._sample(stream_id, pose, pressed, now))
        return samples

    def sample_frame(self, frame: FrameSnapshot, now: float) -> list[PoseSample]:
        if frame.viewer is None:
            samples = [PoseSample.absent_marker(StreamId.HMD, captured_at=now)]
        else:
            samples = [self._sample(StreamId.HMD, frame.viewer, False, now)]

        sources = list(frame.input_sources)
        for index, stream_id in enumerate(CONTROLLER_STREAMS):
            source = sources[index] if index < len(sources) else None
            if source is None or source.grip is None:
                samples.append(PoseSample.absent_marker(stream_id, captured_at=now))
                continue
            pressed = any_button_pressed(source.buttons, self.monitored_button_count)
            samples.append(self._sample(stream_id, source.grip, pressed, now))
        return samples

    @staticmethod
    def _sample(stream_id: StreamId, pose: TrackedPose, pressed: bool, now: float) -> PoseSample:
        return PoseSample(
            stream_id=stream_id,
            position=tuple(pose.position),
            orientation=tuple(pose.orientation),
            button_pressed=pressed and stream_id.has_button,
            captured_at=now,
        )
