"""
One simulated chat user.

A session connects, subscribes to every configured channel and sends a fixed
number of chat messages at a human pace while a listener greenlet decodes
whatever the server pushes back. Odd sessions then unsubscribe and close on
their own; even sessions stay connected until they are stopped from outside
or the server drops them.
"""
import enum
import logging
import random
import time

import gevent
from gevent.event import Event
from websocket import WebSocketConnectionClosedException, create_connection

from . import metrics as m
from .errors import ConnectError, DecodeError, ProcessingError, SendError
from .protocol import CHAT_MESSAGE, decode, encode_chat, encode_subscribe, encode_unsubscribe, parse_sent

logger = logging.getLogger(__name__)

HANDSHAKE_STATUS = 101

CHECK_CONNECTED = "connected successfully"
CHECK_RECEIVED = "message received"


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


def _elapsed_ms(started):
    return (time.perf_counter() - started) * 1000


class VirtualUserSession:
    def __init__(self, session_id, config, metrics, connect=create_connection, sleep=None, rng=None):
        """
        :param connect: called as ``connect(url, **kwargs)``, must return an
            object with ``send``, ``recv``, ``close`` and ``getstatus``
        :param sleep: replaces the interruptible wait between steps, used by
            tests to skip real pauses
        """
        self.id = session_id
        self.username = f"user_{session_id}"
        self.config = config
        self.metrics = metrics
        self.state = SessionState.CONNECTING
        self.channels = set()
        self.error = None

        self._connect = connect
        self._sleep = sleep
        self._rng = rng or random
        self._ws = None
        self._socket_closed = False
        self._listener = None
        self._finished = Event()

    def __repr__(self):
        return f"<VirtualUserSession id={self.id} state={self.state.value}>"

    @property
    def unsubscribes(self):
        return self.config.unsubscribe_odd and self.id % 2 == 1

    def run(self):
        """Drive the whole session. Never raises on protocol or network errors."""
        self.metrics.increment(m.SESSIONS_STARTED)
        try:
            self._connect_socket()
            self._listener = gevent.spawn(self._listen)
            for channel in self.config.channels:
                if self._send(encode_subscribe(channel)):
                    self.channels.add(channel)
            self._send_messages()
            if self.unsubscribes:
                self._unsubscribe_and_close()
            else:
                self._finished.wait()
        except (ConnectError, SendError) as e:
            self._fail(e)
        finally:
            self._finished.set()
            self._close_socket()
            if self._listener is not None and self._listener is not gevent.getcurrent():
                self._listener.kill()
            if self.state is not SessionState.FAILED:
                self.state = SessionState.CLOSED
        return self.state

    def stop(self):
        """Close the connection from outside, abandoning whatever is in flight."""
        if self._finished.is_set():
            return
        logger.debug("[VU-%s] stopping", self.id)
        self._finished.set()
        self._close_socket()

    def _connect_socket(self):
        kwargs = {}
        if self.config.connect_timeout is not None:
            kwargs["timeout"] = self.config.connect_timeout

        started = time.perf_counter()
        try:
            ws = self._connect(self.config.url, **kwargs)
        except Exception as e:
            self.metrics.check(CHECK_CONNECTED, False)
            raise ConnectError(f"connect to {self.config.url} failed: {e}", session_id=self.id) from e

        status = ws.getstatus()
        if status != HANDSHAKE_STATUS:
            self.metrics.check(CHECK_CONNECTED, False)
            try:
                ws.close()
            except Exception:
                logger.debug("[VU-%s] close after failed handshake raised", self.id, exc_info=True)
            raise ConnectError(f"unexpected handshake status {status}", session_id=self.id)

        self.metrics.record_duration(m.CONNECT_TIME, _elapsed_ms(started))
        self.metrics.check(CHECK_CONNECTED, True)
        self._ws = ws
        self.state = SessionState.ACTIVE
        if self._finished.is_set():
            # stopped while the handshake was in progress
            self._close_socket()

    def _pause(self, seconds):
        """Suspend for ``seconds``; False once the session has been stopped."""
        if self._sleep is None:
            self._finished.wait(seconds)
        else:
            self._sleep(seconds)
        return not self._finished.is_set()

    def _send(self, frame):
        if self._finished.is_set():
            return False
        try:
            self._ws.send(frame)
        except Exception as e:
            if self._finished.is_set():
                return False
            raise SendError(f"send failed: {e}", session_id=self.id) from e
        return True

    def _send_messages(self):
        low, high = self.config.pause_range
        for i in range(self.config.messages_per_user):
            if self._finished.is_set():
                return
            started = time.perf_counter()
            if not self._send(encode_chat(self.username, f"text_{i}")):
                return
            self.metrics.record_duration(m.SEND_MESSAGE_TIME, _elapsed_ms(started))
            self.metrics.increment(m.MESSAGES_SENT)

            if not self._pause(low + self._rng.random() * (high - low)):
                return

    def _unsubscribe_and_close(self):
        if not self._pause(self.config.linger):
            return
        for channel in sorted(self.channels):
            if not self._send(encode_unsubscribe(channel)):
                return
            self.channels.discard(channel)
        if not self._pause(self.config.linger):
            return
        self.state = SessionState.CLOSING
        self._finished.set()
        self._close_socket()

    def _close_socket(self):
        if self._ws is None or self._socket_closed:
            return
        self._socket_closed = True
        try:
            self._ws.close()
        except Exception:
            logger.debug("[VU-%s] close raised", self.id, exc_info=True)

    def _fail(self, error):
        self.error = error
        self.state = SessionState.FAILED
        self.metrics.increment(m.SESSIONS_FAILED)
        if isinstance(error, SendError):
            self.metrics.add_rate(m.MESSAGE_ERROR_RATE, True)
        logger.error("[VU-%s] %s: %s", self.id, type(error).__name__, error)

    def _listen(self):
        ws = self._ws
        try:
            while not self._finished.is_set():
                try:
                    frame = ws.recv()
                except WebSocketConnectionClosedException:
                    if not self._finished.is_set():
                        logger.info("[VU-%s] connection closed by server", self.id)
                    return
                except Exception as e:
                    if not self._finished.is_set():
                        self.metrics.add_rate(m.MESSAGE_ERROR_RATE, True)
                        logger.error("[VU-%s] receive failed: %s", self.id, e)
                    return
                if not frame:
                    continue
                try:
                    self.handle_frame(frame)
                except Exception as e:
                    self._record_error(ProcessingError(str(e), session_id=self.id), frame)
        finally:
            self._finished.set()

    def handle_frame(self, raw):
        """Decode one incoming frame and record what it means."""
        started = time.perf_counter()
        envelope = decode(raw)
        if isinstance(envelope, DecodeError):
            envelope.session_id = self.id
            self._record_error(envelope, raw)
            return

        try:
            self._handle_envelope(envelope, started)
        except Exception as e:
            self._record_error(ProcessingError(str(e), session_id=self.id), raw)

    def _handle_envelope(self, envelope, started):
        if envelope.type != CHAT_MESSAGE:
            return
        payload = envelope.payload
        if not isinstance(payload, dict):
            raise ProcessingError(f"chat payload must be an object, got {type(payload).__name__}")

        self.metrics.record_duration(m.MESSAGE_RECEIVED_TIME, _elapsed_ms(started))
        self.metrics.increment(m.MESSAGES_RECEIVED)
        self.metrics.add_rate(m.MESSAGE_ERROR_RATE, False)

        sent = parse_sent(payload)
        if sent is not None:
            delay = time.time() - sent.timestamp()
            self.metrics.record_duration(m.MESSAGE_DELIVERY_TIME, max(delay, 0.0) * 1000)

        if not self.metrics.check(CHECK_RECEIVED, payload.get("message") not in (None, "")):
            logger.warning("[VU-%s] received chat message without text: %r", self.id, payload)

    def _record_error(self, error, raw):
        self.metrics.add_rate(m.MESSAGE_ERROR_RATE, True)
        logger.error("[VU-%s] %s handling message %r: %s", self.id, type(error).__name__, raw, error)
