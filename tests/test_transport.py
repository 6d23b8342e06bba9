"""Tests for the reconnecting client transport."""

import json
import time
from unittest import mock

import pytest
import zmq

from xr_osc_bridge.transport import (
    ReconnectingTransport,
    TransportAction,
    TransportEvent,
    TransportState,
    next_transport_state,
)
from xr_osc_bridge.types import WireMessage

ENDPOINT = "tcp://127.0.0.1:8443"


def _fake_socket():
    sock = mock.MagicMock()
    sock.closed = False
    return sock


@pytest.fixture
def transport(timers):
    t = ReconnectingTransport(ENDPOINT, context=mock.MagicMock(), timer_factory=timers)
    t.links = []

    def open_link(endpoint, generation):
        sock = _fake_socket()
        t.links.append((endpoint, generation, sock))
        return sock

    t._open_link = open_link
    yield t
    t.stop()


def retry_timers(timers, delay=3.0):
    return [tm for tm in timers.pending if tm.interval == delay]


class TestStateMachine:
    @pytest.mark.parametrize(
        "state,event,expected",
        [
            (TransportState.IDLE, TransportEvent.CONNECT, (TransportState.CONNECTING, TransportAction.START_ATTEMPT)),
            (TransportState.CONNECTING, TransportEvent.OPENED, (TransportState.OPEN, TransportAction.NONE)),
            (TransportState.CONNECTING, TransportEvent.FAILED, (TransportState.WAITING, TransportAction.SCHEDULE_RETRY)),
            (TransportState.OPEN, TransportEvent.CLOSED, (TransportState.WAITING, TransportAction.SCHEDULE_RETRY)),
            (TransportState.WAITING, TransportEvent.RETRY, (TransportState.CONNECTING, TransportAction.START_ATTEMPT)),
            (TransportState.OPEN, TransportEvent.STOP, (TransportState.STOPPED, TransportAction.TEARDOWN)),
            (TransportState.WAITING, TransportEvent.STOP, (TransportState.STOPPED, TransportAction.TEARDOWN)),
        ],
    )
    def test_transitions(self, state, event, expected):
        assert next_transport_state(state, event) == expected

    @pytest.mark.parametrize(
        "state,event",
        [
            (TransportState.STOPPED, TransportEvent.CONNECT),
            (TransportState.STOPPED, TransportEvent.RETRY),
            (TransportState.STOPPED, TransportEvent.STOP),
            (TransportState.WAITING, TransportEvent.CLOSED),
            (TransportState.OPEN, TransportEvent.OPENED),
            (TransportState.IDLE, TransportEvent.RETRY),
        ],
    )
    def test_ignored_pairs(self, state, event):
        assert next_transport_state(state, event) == (state, TransportAction.NONE)


class TestReconnectingTransport:
    def test_connect_requires_endpoint(self, timers):
        t = ReconnectingTransport("", context=mock.MagicMock(), timer_factory=timers)
        with pytest.raises(ValueError, match="Server URL not set"):
            t.connect()

    def test_connect_then_open(self, transport):
        opened = []
        transport.on_opened.add_listener(lambda: opened.append(True))

        transport.connect()
        assert transport.state is TransportState.CONNECTING
        assert transport.links[0][0] == ENDPOINT

        transport.notify_opened(transport.generation)
        assert transport.is_open
        assert opened == [True]

    def test_close_schedules_exactly_one_retry(self, transport, timers):
        closed = []
        transport.on_closed.add_listener(lambda code, reason: closed.append((code, reason)))
        transport.connect()
        transport.notify_opened(transport.generation)

        transport.notify_closed(1006, "abnormal", transport.generation)
        transport.notify_closed(1006, "abnormal", transport.generation)
        transport.notify_failed("boom")

        assert transport.state is TransportState.WAITING
        assert closed == [(1006, "abnormal")]
        assert len(retry_timers(timers)) == 1
        assert transport.retry_pending
        assert transport.links[0][2].close.called

    def test_retry_repeats_until_success(self, transport, timers):
        transport.connect()
        for attempt in range(2, 5):
            transport.notify_failed("refused", transport.generation)
            pending = retry_timers(timers)
            assert len(pending) == 1
            pending[0].fire()
            assert transport.state is TransportState.CONNECTING
            assert transport.attempts == attempt

        transport.notify_opened(transport.generation)
        assert transport.is_open
        assert not transport.retry_pending

    def test_stale_generation_is_ignored(self, transport):
        transport.connect()
        stale = transport.generation
        transport.notify_failed("refused", stale)
        transport._on_retry_timer()
        assert transport.state is TransportState.CONNECTING

        transport.notify_opened(stale)
        assert transport.state is TransportState.CONNECTING
        transport.notify_opened(transport.generation)
        assert transport.is_open

    def test_connect_timeout_fails_attempt(self, transport, timers):
        failures = []
        transport.on_failed.add_listener(failures.append)
        transport.connect()
        connect_timer = [tm for tm in timers.pending if tm.interval == 5.0][0]
        connect_timer.fire()
        assert transport.state is TransportState.WAITING
        assert "no connection within" in failures[0]

    def test_open_cancels_connect_timer(self, transport, timers):
        transport.connect()
        connect_timer = [tm for tm in timers.pending if tm.interval == 5.0][0]
        transport.notify_opened(transport.generation)
        assert connect_timer.cancelled

    def test_link_error_on_attempt_waits_and_retries(self, transport, timers):
        def broken(endpoint, generation):
            raise zmq.ZMQError(zmq.EINVAL, "Invalid argument")

        transport._open_link = broken
        failures = []
        transport.on_failed.add_listener(failures.append)
        transport.connect()
        assert transport.state is TransportState.WAITING
        assert len(failures) == 1
        assert len(retry_timers(timers)) == 1

    def test_stop_cancels_retry_and_is_final(self, transport, timers):
        transport.connect()
        transport.notify_failed("refused", transport.generation)
        timer = retry_timers(timers)[0]

        transport.stop()
        assert transport.state is TransportState.STOPPED
        assert timer.cancelled
        transport.connect()
        assert transport.state is TransportState.STOPPED

    def test_send_only_when_open(self, transport):
        message = WireMessage("/hmd/pose", [0.0, 1.6, 0.0, 0.0, 0.0, 0.0])
        assert not transport.send(message)
        assert transport.dropped_messages == 1

        transport.connect()
        transport.notify_opened(transport.generation)
        assert transport.send(message)

        sock = transport.links[0][2]
        payload, flags = sock.send.call_args[0]
        assert json.loads(payload) == {"address": "/hmd/pose", "args": [0.0, 1.6, 0.0, 0.0, 0.0, 0.0]}
        assert flags == zmq.NOBLOCK
        assert transport.sent_messages == 1

    def test_full_send_queue_drops(self, transport):
        transport.connect()
        transport.notify_opened(transport.generation)
        transport.links[0][2].send.side_effect = zmq.Again()
        assert not transport.send(WireMessage("/hmd/pose", []))
        assert transport.dropped_messages == 1

    def test_monitor_events_drive_state(self, transport):
        transport.connect()
        generation = transport.generation
        transport._on_monitor_event(generation, zmq.EVENT_CONNECTED)
        assert transport.state is TransportState.CONNECTING
        transport._on_monitor_event(generation, zmq.EVENT_HANDSHAKE_SUCCEEDED)
        assert transport.is_open
        transport._on_monitor_event(generation, zmq.EVENT_DISCONNECTED)
        assert transport.state is TransportState.WAITING

    def test_notice_from_relay(self, transport):
        notices = []
        transport.on_notice.add_listener(notices.append)
        transport.connect()
        generation = transport.generation
        sock = transport.links[0][2]
        sock.recv.side_effect = [b'{"type":"connection","oscStatus":"ready"}', b"\xff", zmq.Again()]
        transport._drain_inbound(sock, generation)
        assert notices == [{"type": "connection", "oscStatus": "ready"}]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestRealLink:
    def test_connects_to_router_and_sends(self, free_port):
        context = zmq.Context()
        router = context.socket(zmq.ROUTER)
        router.setsockopt(zmq.LINGER, 0)
        router.bind(f"tcp://127.0.0.1:{free_port}")
        transport = ReconnectingTransport(f"tcp://127.0.0.1:{free_port}", context=context)
        try:
            transport.connect()
            assert _wait_for(lambda: transport.is_open)

            message = WireMessage("/hmd/pose", [1.0])
            assert _wait_for(lambda: transport.send(message))
            assert router.poll(2000)
            identity, payload = router.recv_multipart()
            assert json.loads(payload) == {"address": "/hmd/pose", "args": [1.0]}
        finally:
            transport.stop()
            router.close(linger=0)
            context.term()

    def test_unreachable_relay_fails_and_waits(self, free_port):
        transport = ReconnectingTransport(
            f"tcp://127.0.0.1:{free_port}", reconnect_delay=60.0, connect_timeout=0.2
        )
        failures = []
        transport.on_failed.add_listener(failures.append)
        try:
            transport.connect()
            assert _wait_for(lambda: transport.state is TransportState.WAITING)
            assert failures
            assert transport.retry_pending
        finally:
            transport.stop()
