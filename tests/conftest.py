"""Shared fixtures: deterministic timers and clocks, local ports and UDP sinks."""

import socket

import pytest
from pythonosc.osc_message import OscMessage


class FakeTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    def __init__(self, registry, interval, function, args=None, kwargs=None):
        self.registry = registry
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        assert self.started and not self.cancelled
        self.fired = True
        self.function(*self.args, **self.kwargs)


class TimerRegistry:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(self, interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class UdpSink:
    """Localhost UDP receiver that decodes OSC datagrams."""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(2.0)
        self.port = self.sock.getsockname()[1]

    def receive(self):
        data, _ = self.sock.recvfrom(4096)
        return OscMessage(data)

    def close(self):
        self.sock.close()


@pytest.fixture
def timers():
    return TimerRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def udp_sinks():
    sinks = [UdpSink() for _ in range(3)]
    yield sinks
    for sink in sinks:
        sink.close()
