import json

import gevent
import pytest
from gevent.queue import Queue
from websocket import WebSocketConnectionClosedException

from chatload.config import HarnessConfig, Stage
from chatload.metrics import MetricsSink


class FakeWebSocket:
    """Stands in for ``websocket.WebSocket``; frames pushed in are returned by recv()."""

    def __init__(self, status=101):
        self.status = status
        self.sent = []
        self.closed = False
        self.incoming = Queue()

    def getstatus(self):
        return self.status

    def send(self, frame):
        if self.closed:
            raise WebSocketConnectionClosedException("socket is already closed.")
        self.sent.append(frame)

    def recv(self):
        frame = self.incoming.get()
        if frame is StopIteration:
            raise WebSocketConnectionClosedException("Connection to remote host was lost.")
        return frame

    def close(self):
        self.closed = True
        self.incoming.put(StopIteration)

    def push(self, frame):
        self.incoming.put(frame)

    def sent_envelopes(self):
        return [json.loads(frame) for frame in self.sent]


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)
        gevent.sleep(0)


@pytest.fixture
def config():
    return HarnessConfig(url="ws://chat.test/ws", stages=(Stage(1.0, 3),), tick=0.1, graceful_stop=1.0)


@pytest.fixture
def metrics():
    return MetricsSink()


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def sleep():
    return RecordingSleep()
