"""
Client side of the transport channel: a ZeroMQ DEALER link to the relay
with an explicit, fixed-delay reconnect state machine.

libzmq's built-in reconnection is disabled; every attempt is a fresh
socket, and lifecycle events come from the socket monitor:

    IDLE --connect--> CONNECTING --opened--> OPEN
    {CONNECTING, OPEN} --closed|failed--> WAITING (+ one retry timer)
    WAITING --retry--> CONNECTING
    any --stop--> STOPPED

Nothing is queued while the link is down.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from functools import partial
from typing import Any

import zmq
import zmq.auth
from zmq.utils.monitor import recv_monitor_message

from .events import EventHandler
from .protocol import decode_server_notice, encode_message
from .types import WireMessage

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 3.0
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_MAX_INBOUND_BYTES = 1024
MONITOR_POLL_MS = 50


class TransportState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    WAITING = "waiting"
    STOPPED = "stopped"


class TransportEvent(str, Enum):
    CONNECT = "connect"
    OPENED = "opened"
    CLOSED = "closed"
    FAILED = "failed"
    RETRY = "retry"
    STOP = "stop"


class TransportAction(str, Enum):
    NONE = "none"
    START_ATTEMPT = "start_attempt"
    SCHEDULE_RETRY = "schedule_retry"
    TEARDOWN = "teardown"


_TRANSITIONS: dict[tuple[TransportState, TransportEvent], tuple[TransportState, TransportAction]] = {
    (TransportState.IDLE, TransportEvent.CONNECT): (TransportState.CONNECTING, TransportAction.START_ATTEMPT),
    (TransportState.CONNECTING, TransportEvent.OPENED): (TransportState.OPEN, TransportAction.NONE),
    (TransportState.CONNECTING, TransportEvent.CLOSED): (TransportState.WAITING, TransportAction.SCHEDULE_RETRY),
    (TransportState.CONNECTING, TransportEvent.FAILED): (TransportState.WAITING, TransportAction.SCHEDULE_RETRY),
    (TransportState.OPEN, TransportEvent.CLOSED): (TransportState.WAITING, TransportAction.SCHEDULE_RETRY),
    (TransportState.OPEN, TransportEvent.FAILED): (TransportState.WAITING, TransportAction.SCHEDULE_RETRY),
    (TransportState.WAITING, TransportEvent.RETRY): (TransportState.CONNECTING, TransportAction.START_ATTEMPT),
}


def next_transport_state(
    state: TransportState, event: TransportEvent
) -> tuple[TransportState, TransportAction]:
    """Pure transition function; unlisted pairs are ignored."""
    if event is TransportEvent.STOP and state is not TransportState.STOPPED:
        return TransportState.STOPPED, TransportAction.TEARDOWN
    return _TRANSITIONS.get((state, event), (state, TransportAction.NONE))


_FAILURE_EVENTS = {
    zmq.EVENT_CLOSED,
    zmq.EVENT_HANDSHAKE_FAILED_NO_DETAIL,
    zmq.EVENT_HANDSHAKE_FAILED_PROTOCOL,
    zmq.EVENT_HANDSHAKE_FAILED_AUTH,
}


def _event_name(event: Any) -> str:
    return getattr(event, "name", None) or str(event)


class ReconnectingTransport:
    """DEALER link to the relay that keeps trying every ``reconnect_delay`` s.

    Events:
        on_opened(): link is up.
        on_closed(code, reason): an open or pending link dropped.
        on_failed(error): an attempt could not be established.
        on_notice(dict): a JSON notice arrived from the relay.
    """

    def __init__(
        self,
        endpoint: str = "",
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_inbound_bytes: int = DEFAULT_MAX_INBOUND_BYTES,
        heartbeat_interval: float = 10.0,
        heartbeat_timeout: float = 30.0,
        curve_server_public_key_file: str | None = None,
        context: zmq.Context | None = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.endpoint = endpoint
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout
        self.max_inbound_bytes = max_inbound_bytes
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self._server_public_key = (
            load_server_public_key(curve_server_public_key_file)
            if curve_server_public_key_file
            else None
        )
        self._owns_context = context is None
        self._context = context or zmq.Context()
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._socket_lock = threading.Lock()
        self._state = TransportState.IDLE
        self._generation = 0
        self._socket: Any = None
        self._retry_timer: Any = None
        self._connect_timer: Any = None

        self.attempts = 0
        self.sent_messages = 0
        self.dropped_messages = 0

        self.on_opened = EventHandler("opened")
        self.on_closed = EventHandler("closed")
        self.on_failed = EventHandler("failed")
        self.on_notice = EventHandler("notice")

    # -- public API -------------------------------------------------------

    @property
    def state(self) -> TransportState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self._state is TransportState.OPEN

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def retry_pending(self) -> bool:
        with self._lock:
            return self._retry_timer is not None

    def connect(self, endpoint: str | None = None) -> None:
        if endpoint is not None:
            self.endpoint = endpoint
        if not self.endpoint:
            raise ValueError("Server URL not set")
        self._dispatch(TransportEvent.CONNECT)

    def stop(self) -> None:
        self._dispatch(TransportEvent.STOP)
        if self._owns_context and not self._context.closed:
            self._context.term()

    def send(self, message: WireMessage) -> bool:
        """Non-blocking send; the message is dropped when the link is not open."""
        if self._state is not TransportState.OPEN:
            self.dropped_messages += 1
            return False
        payload = encode_message(message)
        with self._socket_lock:
            sock = self._socket
            if sock is None or sock.closed:
                self.dropped_messages += 1
                return False
            try:
                sock.send(payload, zmq.NOBLOCK)
            except zmq.Again:
                self.dropped_messages += 1
                return False
            except zmq.ZMQError as e:
                logger.error(f"Error sending to relay: {e}")
                self.dropped_messages += 1
                return False
        self.sent_messages += 1
        return True

    # Entry points for link events; ``generation`` filters out stale links.

    def notify_opened(self, generation: int | None = None) -> None:
        self._dispatch(TransportEvent.OPENED, generation)

    def notify_closed(self, code: int = 0, reason: str = "", generation: int | None = None) -> None:
        self._dispatch(TransportEvent.CLOSED, generation, code, reason)

    def notify_failed(self, error: str, generation: int | None = None) -> None:
        self._dispatch(TransportEvent.FAILED, generation, error)

    # -- state machine ----------------------------------------------------

    def _dispatch(self, event: TransportEvent, generation: int | None = None, *details: Any) -> None:
        notifications: list[tuple[EventHandler, tuple[Any, ...]]] = []
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Ignoring stale transport event {event.value} (gen {generation})")
                return
            old = self._state
            new, action = next_transport_state(old, event)
            if new is old and action is TransportAction.NONE:
                return
            self._state = new
            logger.debug(f"Transport {old.value} --{event.value}--> {new.value}")

            if event is TransportEvent.OPENED:
                self._cancel_connect_timer()
                logger.info(f"Connected to relay at {self.endpoint}")
                notifications.append((self.on_opened, ()))
            elif event is TransportEvent.CLOSED:
                code, reason = (details + (0, ""))[:2]
                logger.warning(f"Connection to relay closed (code={code}, reason={reason})")
                notifications.append((self.on_closed, (code, reason)))
            elif event is TransportEvent.FAILED:
                error = details[0] if details else "unknown error"
                logger.error(f"Connection to relay failed: {error}")
                notifications.append((self.on_failed, (error,)))

            if action is TransportAction.START_ATTEMPT:
                error = self._start_attempt()
                if error is not None:
                    self._state = TransportState.WAITING
                    logger.error(f"Connection to relay failed: {error}")
                    notifications.append((self.on_failed, (error,)))
                    self._schedule_retry()
            elif action is TransportAction.SCHEDULE_RETRY:
                self._close_link()
                self._schedule_retry()
            elif action is TransportAction.TEARDOWN:
                self._cancel_retry_timer()
                self._close_link()
                logger.info("Transport stopped")

        for handler, args in notifications:
            handler.invoke(*args)

    def _start_attempt(self) -> str | None:
        """Open a fresh link. Caller holds the lock. Returns an error or None."""
        self._generation += 1
        self.attempts += 1
        generation = self._generation
        logger.info(f"Connecting to relay at {self.endpoint} (attempt {self.attempts})")
        try:
            sock = self._open_link(self.endpoint, generation)
        except zmq.ZMQError as e:
            return str(e)
        with self._socket_lock:
            self._socket = sock
        timer = self._timer_factory(self.connect_timeout, partial(self._on_connect_timeout, generation))
        timer.daemon = True
        self._connect_timer = timer
        timer.start()
        return None

    def _schedule_retry(self) -> None:
        if self._retry_timer is not None:
            return
        timer = self._timer_factory(self.reconnect_delay, self._on_retry_timer)
        timer.daemon = True
        self._retry_timer = timer
        timer.start()
        logger.info(f"Reconnecting to relay in {self.reconnect_delay:.1f}s")

    def _on_retry_timer(self) -> None:
        with self._lock:
            self._retry_timer = None
        self._dispatch(TransportEvent.RETRY)

    def _on_connect_timeout(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._connect_timer = None
        self.notify_failed(f"no connection within {self.connect_timeout:.1f}s", generation)

    def _cancel_retry_timer(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _cancel_connect_timer(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _close_link(self) -> None:
        self._cancel_connect_timer()
        # Bumping the generation retires the link thread and any late events
        self._generation += 1
        with self._socket_lock:
            sock, self._socket = self._socket, None
            if sock is not None and not sock.closed:
                sock.close(linger=0)

    # -- ZeroMQ link ------------------------------------------------------

    def _open_link(self, endpoint: str, generation: int) -> zmq.Socket:
        sock = self._context.socket(zmq.DEALER)
        sock.setsockopt(zmq.LINGER, 0)
        sock.setsockopt(zmq.RECONNECT_IVL, -1)
        sock.setsockopt(zmq.IMMEDIATE, 1)
        sock.setsockopt(zmq.SNDHWM, 1)
        sock.setsockopt(zmq.MAXMSGSIZE, self.max_inbound_bytes)
        sock.setsockopt(zmq.HEARTBEAT_IVL, int(self.heartbeat_interval * 1000))
        sock.setsockopt(zmq.HEARTBEAT_TIMEOUT, int(self.heartbeat_timeout * 1000))
        if self._server_public_key is not None:
            public, secret = zmq.curve_keypair()
            sock.curve_publickey = public
            sock.curve_secretkey = secret
            sock.curve_serverkey = self._server_public_key
        try:
            monitor = sock.get_monitor_socket()
        except zmq.ZMQError:
            sock.close(linger=0)
            raise
        try:
            sock.connect(endpoint)
        except zmq.ZMQError:
            monitor.close(linger=0)
            sock.close(linger=0)
            raise
        thread = threading.Thread(
            target=self._link_loop,
            args=(sock, monitor, generation),
            name=f"TransportLink-{generation}",
            daemon=True,
        )
        thread.start()
        return sock

    def _link_loop(self, sock: zmq.Socket, monitor: zmq.Socket, generation: int) -> None:
        """Translate monitor events and drain relay notices for one link."""
        try:
            while self._generation == generation:
                if monitor.poll(MONITOR_POLL_MS):
                    message = recv_monitor_message(monitor)
                    event = message["event"]
                    if event == zmq.EVENT_MONITOR_STOPPED:
                        break
                    self._on_monitor_event(generation, event)
                self._drain_inbound(sock, generation)
        except zmq.ZMQError as e:
            if self._generation == generation:
                logger.debug(f"Transport link loop ended: {e}")
        finally:
            monitor.close(linger=0)

    def _on_monitor_event(self, generation: int, event: Any) -> None:
        if event == zmq.EVENT_HANDSHAKE_SUCCEEDED:
            self.notify_opened(generation)
        elif event == zmq.EVENT_DISCONNECTED:
            self.notify_closed(int(event), _event_name(event), generation)
        elif event in _FAILURE_EVENTS:
            self.notify_failed(_event_name(event), generation)
        else:
            logger.debug(f"Transport monitor event {_event_name(event)}")

    def _drain_inbound(self, sock: zmq.Socket, generation: int) -> None:
        while self._generation == generation:
            with self._socket_lock:
                if sock.closed:
                    return
                try:
                    payload = sock.recv(zmq.NOBLOCK)
                except zmq.Again:
                    return
            if len(payload) > self.max_inbound_bytes:
                logger.warning(f"Discarding oversized message from relay ({len(payload)} bytes)")
                continue
            notice = decode_server_notice(payload)
            if notice is None:
                logger.warning("Discarding unreadable message from relay")
                continue
            logger.debug(f"Relay notice: {notice}")
            self.on_notice.invoke(notice)


def load_server_public_key(path: str) -> bytes:
    """Read the relay's CURVE public key; errors are fatal to the caller."""
    public, _ = zmq.auth.load_certificate(path)
    if not public:
        raise ValueError(f"No public key in {path}")
    return public
