"""
Rate-bounded publishing of pose samples onto the transport.

A single "last sent" timestamp is shared by every stream: when the gate
opens, every sample of that tick goes out together and the gate closes
again for ``interval`` seconds. This bounds the aggregate outbound rate,
not the per-stream rate.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from typing import Protocol

from .protocol import build_pose_message
from .types import PoseSample, StreamId, WireMessage

logger = logging.getLogger(__name__)

DEFAULT_SEND_INTERVAL = 0.032


class MessageSink(Protocol):
    @property
    def is_open(self) -> bool: ...

    def send(self, message: WireMessage) -> bool: ...


class ThrottledPublisher:
    """Throttle gate between the sampler and the transport."""

    def __init__(
        self,
        transport: MessageSink,
        interval: float = DEFAULT_SEND_INTERVAL,
        enabled: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.transport = transport
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._enabled = enabled
        self._last_sent = -math.inf
        # Controllers whose "now absent" marker has already gone out
        self._absence_reported: set[StreamId] = set()

        self.sent_messages = 0
        self.send_failures = 0
        self.throttled_ticks = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        with self._lock:
            self._enabled = bool(value)

    @property
    def last_sent(self) -> float:
        return self._last_sent

    def gate_open(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            return self._gate_open(now)

    def _gate_open(self, now: float) -> bool:
        return (
            self._enabled
            and now - self._last_sent >= self.interval
            and self.transport.is_open
        )

    def publish_tick(
        self, samples: Iterable[PoseSample], now: float | None = None
    ) -> list[WireMessage]:
        """Offer one tick's worth of samples; returns what was transmitted."""
        now = self._clock() if now is None else now
        sent: list[WireMessage] = []
        with self._lock:
            samples = list(samples)
            for sample in samples:
                if not sample.absent:
                    self._absence_reported.discard(sample.stream_id)

            if not self._gate_open(now):
                if self._enabled:
                    self.throttled_ticks += 1
                return sent

            for sample in samples:
                if sample.absent:
                    # An absent HMD is never forwarded; a controller gets one marker
                    if not sample.stream_id.has_button:
                        continue
                    if sample.stream_id in self._absence_reported:
                        continue
                message = build_pose_message(sample)
                if self.transport.send(message):
                    sent.append(message)
                    self.sent_messages += 1
                    if sample.absent:
                        self._absence_reported.add(sample.stream_id)
                else:
                    self.send_failures += 1

            self._last_sent = now

        if sent:
            logger.debug(f"Published {len(sent)} pose message(s) at t={now:.3f}")
        return sent

    def publish(
        self, stream_id: StreamId, sample: PoseSample | None, now: float | None = None
    ) -> bool:
        """Single-stream form of :meth:`publish_tick`. ``None`` means absent."""
        if sample is None:
            sample = PoseSample.absent_marker(stream_id)
        elif sample.stream_id is not stream_id:
            raise ValueError(f"sample for {sample.stream_id.value} offered as {stream_id.value}")
        return bool(self.publish_tick([sample], now))
