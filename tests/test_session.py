import random
from dataclasses import replace

import gevent
import pytest

from chatload.errors import ConnectError, SendError
from chatload.session import CHECK_CONNECTED, CHECK_RECEIVED, SessionState, VirtualUserSession

from conftest import FakeWebSocket


def make_session(session_id, config, metrics, ws, sleep):
    return VirtualUserSession(
        session_id, config, metrics, connect=lambda url, **kwargs: ws, sleep=sleep, rng=random.Random(7)
    )


def run_in_background(session):
    greenlet = gevent.spawn(session.run)
    gevent.sleep(0)
    return greenlet


def types(ws):
    return [envelope[0] for envelope in ws.sent_envelopes()]


def test_odd_session_full_lifecycle(config, metrics, fake_ws, sleep):
    config = replace(config, channels=("chat", "news"))
    session = make_session(1, config, metrics, fake_ws, sleep)

    assert session.run() is SessionState.CLOSED

    assert types(fake_ws) == [
        "subscribe:chat",
        "subscribe:news",
        "chat:message",
        "chat:message",
        "chat:message",
        "chat:message",
        "chat:message",
        "unsubscribe:chat",
        "unsubscribe:news",
    ]
    assert fake_ws.closed
    assert session.channels == set()

    # five typing pauses, then linger before unsubscribing and before closing
    pauses, lingers = sleep.calls[:5], sleep.calls[5:]
    assert all(2 <= p < 14 for p in pauses)
    assert lingers == [5.0, 5.0]

    summary = metrics.export()
    assert summary["counters"]["messages_sent"] == 5
    assert summary["trends"]["send_message_time"]["count"] == 5
    assert summary["trends"]["connect_time"]["count"] == 1
    assert summary["checks"][CHECK_CONNECTED] == {"passes": 1, "fails": 0}


def test_chat_messages_carry_username(config, metrics, fake_ws, sleep):
    make_session(3, config, metrics, fake_ws, sleep).run()

    chats = [payload for kind, payload in fake_ws.sent_envelopes() if kind == "chat:message"]
    assert chats == [{"from": "user_3", "message": f"text_{i}"} for i in range(5)]


def test_even_session_stays_connected_until_stopped(config, metrics, fake_ws, sleep):
    session = make_session(2, config, metrics, fake_ws, sleep)
    greenlet = run_in_background(session)
    greenlet.join(timeout=0.5)

    assert not greenlet.dead
    assert session.state is SessionState.ACTIVE
    assert not fake_ws.closed

    session.stop()
    greenlet.join(timeout=1)

    assert greenlet.value is SessionState.CLOSED
    assert fake_ws.closed
    assert "unsubscribe:chat" not in types(fake_ws)
    assert types(fake_ws).count("chat:message") == 5


def test_odd_session_keeps_connection_when_unsubscribe_disabled(config, metrics, fake_ws, sleep):
    config = replace(config, unsubscribe_odd=False)
    session = make_session(5, config, metrics, fake_ws, sleep)
    greenlet = run_in_background(session)
    greenlet.join(timeout=0.5)

    assert not greenlet.dead
    session.stop()
    greenlet.join(timeout=1)
    assert not any(t.startswith("unsubscribe:") for t in types(fake_ws))


def test_even_session_ends_when_server_closes(config, metrics, fake_ws, sleep):
    session = make_session(4, config, metrics, fake_ws, sleep)
    greenlet = run_in_background(session)
    greenlet.join(timeout=0.5)

    fake_ws.incoming.put(StopIteration)
    greenlet.join(timeout=1)

    assert greenlet.value is SessionState.CLOSED


def test_stop_mid_send_loop_abandons_remaining_messages(config, metrics, fake_ws):
    session = VirtualUserSession(
        1, config, metrics, connect=lambda url, **kwargs: fake_ws, sleep=lambda seconds: gevent.sleep(0.05)
    )
    greenlet = run_in_background(session)
    gevent.sleep(0.07)
    session.stop()
    greenlet.join(timeout=1)

    assert greenlet.value is SessionState.CLOSED
    assert 1 <= types(fake_ws).count("chat:message") < 5
    assert "unsubscribe:chat" not in types(fake_ws)


def test_handshake_status_must_be_101(config, metrics, sleep):
    ws = FakeWebSocket(status=200)
    session = make_session(1, config, metrics, ws, sleep)

    assert session.run() is SessionState.FAILED
    assert isinstance(session.error, ConnectError)
    assert ws.sent == []
    assert ws.closed
    summary = metrics.export()
    assert summary["checks"][CHECK_CONNECTED] == {"passes": 0, "fails": 1}
    assert summary["counters"]["sessions_failed"] == 1
    assert "connect_time" not in summary["trends"]


def test_connect_exception_fails_without_retry(config, metrics, sleep, caplog):
    attempts = []

    def refuse(url, **kwargs):
        attempts.append(url)
        raise ConnectionRefusedError("nobody home")

    session = VirtualUserSession(7, config, metrics, connect=refuse, sleep=sleep)

    assert session.run() is SessionState.FAILED
    assert attempts == ["ws://chat.test/ws"]
    assert session.error.session_id == 7
    assert "[VU-7]" in caplog.text


def test_connect_timeout_is_passed_through(config, metrics, fake_ws, sleep):
    seen = {}

    def connect(url, **kwargs):
        seen.update(kwargs)
        return fake_ws

    config = replace(config, connect_timeout=3.0)
    VirtualUserSession(1, config, metrics, connect=connect, sleep=sleep).run()

    assert seen == {"timeout": 3.0}


def test_send_failure_fails_session(config, metrics, fake_ws, sleep):
    def broken_send(frame):
        raise OSError("broken pipe")

    fake_ws.send = broken_send
    session = make_session(1, config, metrics, fake_ws, sleep)

    assert session.run() is SessionState.FAILED
    assert isinstance(session.error, SendError)
    assert metrics.export()["rates"]["message_error_rate"]["hits"] == 1


def test_incoming_chat_message_is_counted(config, metrics, fake_ws, sleep):
    session = make_session(2, config, metrics, fake_ws, sleep)
    greenlet = run_in_background(session)
    fake_ws.push('["chat:message", {"from": "u", "message": "hi"}]')
    gevent.sleep(0.01)
    session.stop()
    greenlet.join(timeout=1)

    summary = metrics.export()
    assert summary["counters"]["messages_received"] == 1
    assert summary["trends"]["message_received_time"]["count"] == 1
    assert summary["checks"][CHECK_RECEIVED] == {"passes": 1, "fails": 0}


@pytest.fixture
def session(config, metrics, fake_ws, sleep):
    return make_session(9, config, metrics, fake_ws, sleep)


def test_handle_frame_not_array_counts_one_error(session, metrics, caplog):
    session.handle_frame('{"not":"an array"}')

    summary = metrics.export()
    assert summary["rates"]["message_error_rate"] == {"hits": 1, "total": 1, "rate": 1.0}
    assert "messages_received" not in summary["counters"]
    assert "[VU-9]" in caplog.text
    assert '{"not":"an array"}' in caplog.text


def test_handle_frame_malformed_json(session, metrics):
    session.handle_frame("[oops")
    assert metrics.export()["rates"]["message_error_rate"]["hits"] == 1


def test_handle_frame_processing_error(session, metrics):
    session.handle_frame('["chat:message", "just a string"]')

    summary = metrics.export()
    assert summary["rates"]["message_error_rate"]["hits"] == 1
    assert "messages_received" not in summary["counters"]


def test_handle_frame_empty_message_fails_soft_check(session, metrics):
    session.handle_frame('["chat:message", {"from": "u", "message": ""}]')

    summary = metrics.export()
    assert summary["counters"]["messages_received"] == 1
    assert summary["checks"][CHECK_RECEIVED] == {"passes": 0, "fails": 1}
    assert summary["rates"]["message_error_rate"]["hits"] == 0


def test_handle_frame_ignores_other_envelopes(session, metrics):
    session.handle_frame('["subscribe:chat", {}]')
    assert metrics.export() == {"counters": {}, "trends": {}, "rates": {}, "checks": {}}


def test_handle_frame_records_delivery_time(session, metrics):
    session.handle_frame('["chat:message", {"from": "u", "message": "hi", "sent": "2020-01-01T00:00:00Z"}]')
    assert metrics.export()["trends"]["message_delivery_time"]["count"] == 1


def test_stop_before_run_is_harmless(session):
    session.stop()
    session.stop()
    assert session.run() is SessionState.CLOSED


def test_listener_survives_unexpected_handler_error(config, metrics, fake_ws, sleep, monkeypatch):
    from chatload import session as session_module

    real_decode = session_module.decode
    calls = []

    def flaky_decode(raw):
        calls.append(raw)
        if len(calls) == 1:
            raise RuntimeError("decoder blew up")
        return real_decode(raw)

    monkeypatch.setattr(session_module, "decode", flaky_decode)
    session = make_session(2, config, metrics, fake_ws, sleep)
    greenlet = run_in_background(session)
    fake_ws.push('["chat:message", {"from": "u", "message": "first"}]')
    fake_ws.push('["chat:message", {"from": "u", "message": "second"}]')
    gevent.sleep(0.01)

    assert session.state is SessionState.ACTIVE
    session.stop()
    greenlet.join(timeout=1)

    summary = metrics.export()
    assert summary["rates"]["message_error_rate"] == {"hits": 1, "total": 2, "rate": 0.5}
    assert summary["counters"]["messages_received"] == 1
