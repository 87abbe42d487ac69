"""Tests for the realtime session client."""

import asyncio
import random

import pytest

from thread_sync.exceptions import (
    NoThreadSelectedError,
    NotConnectedError,
    ProtocolError,
    ReplyTimeoutError,
    SessionClosedError,
)
from thread_sync.session.client import ThreadSessionClient, compute_backoff_ms
from thread_sync.session.status import ConnectionStatus


async def _until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def _make(fake_socket_cls, **kwargs):
    sockets = []

    async def factory(url):
        sock = fake_socket_cls()
        sockets.append(sock)
        return sock

    statuses = []
    client = ThreadSessionClient(
        "t1",
        get_credential=lambda: "jwt-123",
        connect_factory=factory,
        on_status=statuses.append,
        **kwargs,
    )
    return client, sockets, statuses


def test_requires_thread_id():
    with pytest.raises(NoThreadSelectedError):
        ThreadSessionClient("")


def test_backoff_doubles_then_caps():
    rng = random.Random(1)
    delays = [compute_backoff_ms(a, rng) for a in range(1, 9)]
    bases = [1000, 2000, 4000, 8000, 15000, 15000, 15000, 15000]
    for d, base in zip(delays, bases):
        assert base <= d < base + 350


def test_backoff_attempt_is_clamped():
    rng = random.Random(0)
    assert 15000 <= compute_backoff_ms(50, rng) < 15350
    assert 1000 <= compute_backoff_ms(0, rng) < 1350


def test_handshake_and_send_envelope(fake_socket_cls):
    async def main():
        client, sockets, statuses = _make(fake_socket_cls)
        await client.connect()
        await _until(lambda: sockets and sockets[0].sent)
        sock = sockets[0]
        hello = sock.sent[0]

        sock.push({"type": "HELLO_OK", "payload": {"serverTime": "2026-01-01T00:00:00Z"}})
        ready = await client.wait_for_ready(1)

        assert client.send("PING", {"a": 1, "threadId": "other"}, request_id="r1") is True
        await _until(lambda: len(sock.sent) == 2)
        envelope = sock.sent[1]

        await client.disconnect()
        return client, hello, ready, envelope, statuses, sock

    client, hello, ready, envelope, statuses, sock = asyncio.run(main())

    assert hello["type"] == "HELLO"
    assert hello["payload"]["jwt"] == "jwt-123"
    assert hello["payload"]["threadId"] == "t1"
    assert ready is True

    assert envelope["type"] == "PING"
    assert envelope["threadId"] == "t1"
    assert envelope["payload"] == {"a": 1, "threadId": "t1"}
    assert envelope["requestId"] == "r1"
    assert envelope["ts"].endswith("Z")

    seen = [e.status for e in statuses]
    assert seen[:3] == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.SOCKET_OPEN,
        ConnectionStatus.READY,
    ]
    assert seen[-1] == ConnectionStatus.DISCONNECTED
    assert statuses[2].extra["server_time"] == "2026-01-01T00:00:00Z"
    assert sock.close_code == 1000
    assert client.status == ConnectionStatus.DISCONNECTED


def test_send_returns_false_when_not_open():
    client = ThreadSessionClient("t1")
    assert client.send("PING") is False
    assert client.get_buffered_amount() == 0


def test_hello_timeouts_back_off_with_increasing_delays(fake_socket_cls):
    delays = []

    async def main():
        client, sockets, statuses = _make(
            fake_socket_cls, hello_timeout=0.01, rng=random.Random(7)
        )

        async def fake_sleep(seconds):
            delays.append(seconds)
            if len(delays) == 5:
                client.reconnect = False
            await asyncio.sleep(0)

        client._sleep = fake_sleep
        await client.connect()
        await asyncio.wait_for(client._task, 5)
        return sockets, statuses

    sockets, statuses = asyncio.run(main())

    assert len(delays) == 5
    assert all(b > a for a, b in zip(delays, delays[1:]))
    assert all(s.close_code == 4008 for s in sockets)
    errors = [e for e in statuses if e.status == ConnectionStatus.ERROR]
    assert len(errors) >= 5
    reconnects = [e for e in statuses if e.reconnecting]
    assert [e.extra["attempt"] for e in reconnects] == [1, 2, 3, 4, 5]


def test_credential_failure_closes_with_4001(fake_socket_cls):
    def broken():
        raise RuntimeError("no token")

    async def main():
        client, sockets, statuses = _make(fake_socket_cls, reconnect=False)
        client._get_credential = broken
        await client.connect()
        await asyncio.wait_for(client._task, 1)
        return sockets, statuses

    sockets, statuses = asyncio.run(main())
    assert sockets[0].close_code == 4001
    assert sockets[0].sent == []
    assert ConnectionStatus.ERROR in [e.status for e in statuses]


def test_expect_resolves_on_matching_message(fake_socket_cls):
    async def main():
        client, sockets, _ = _make(fake_socket_cls)
        await client.connect()
        await _until(lambda: sockets)
        fut = client.expect(lambda m: m.get("type") == "PONG")
        sockets[0].push({"type": "NOISE"})
        sockets[0].push({"type": "PONG", "payload": {"n": 1}})
        msg = await asyncio.wait_for(fut, 1)
        await client.disconnect()
        return msg

    msg = asyncio.run(main())
    assert msg["payload"] == {"n": 1}


def test_predicate_error_rejects_the_wait(fake_socket_cls):
    def predicate(msg):
        raise ValueError("bad predicate")

    async def main():
        client, sockets, _ = _make(fake_socket_cls)
        await client.connect()
        await _until(lambda: sockets)
        fut = client.expect(predicate)
        sockets[0].push({"type": "ANY"})
        try:
            with pytest.raises(ValueError, match="bad predicate"):
                await asyncio.wait_for(fut, 1)
        finally:
            await client.disconnect()

    asyncio.run(main())


def test_wait_for_message_times_out(fake_socket_cls):
    async def main():
        client, sockets, _ = _make(fake_socket_cls)
        await client.connect()
        try:
            with pytest.raises(ReplyTimeoutError) as exc:
                await client.wait_for_message(lambda m: False, timeout=0.01)
        finally:
            await client.disconnect()
        return exc.value

    err = asyncio.run(main())
    assert err.code == "WS_TIMEOUT"


def test_disconnect_rejects_pending_waits(fake_socket_cls):
    async def main():
        client, sockets, _ = _make(fake_socket_cls)
        await client.connect()
        await _until(lambda: sockets)
        fut = client.expect(lambda m: False)
        await client.disconnect()
        return fut

    fut = asyncio.run(main())
    assert isinstance(fut.exception(), SessionClosedError)


def test_server_drop_rejects_waits_as_dropped(fake_socket_cls):
    async def main():
        client, sockets, statuses = _make(fake_socket_cls, reconnect=False)
        await client.connect()
        await _until(lambda: sockets)
        fut = client.expect(lambda m: False)
        await sockets[0].close(1006, "abnormal")
        await asyncio.wait_for(client._task, 1)
        return fut, statuses

    fut, statuses = asyncio.run(main())
    err = fut.exception()
    assert isinstance(err, NotConnectedError)
    assert err.code == "WS_DROPPED"
    assert statuses[-1].status == ConnectionStatus.ERROR
    assert statuses[-1].extra["code"] == 1006


def test_listener_errors_do_not_break_dispatch(fake_socket_cls):
    received = []

    async def main():
        client, sockets, _ = _make(fake_socket_cls)

        def boom(msg):
            raise RuntimeError("listener crash")

        client.on_message(boom)
        off = client.on_message(received.append)
        await client.connect()
        await _until(lambda: sockets)
        sockets[0].push({"type": "A"})
        await _until(lambda: received)
        off()
        sockets[0].push({"type": "B"})
        await asyncio.sleep(0.01)
        await client.disconnect()

    asyncio.run(main())
    assert [m["type"] for m in received] == ["A"]


def test_malformed_payload_does_not_end_the_session(fake_socket_cls):
    errors = []
    received = []

    async def main():
        client, sockets, statuses = _make(fake_socket_cls, on_error=errors.append)
        client.on_message(received.append)
        await client.connect()
        await _until(lambda: sockets and sockets[0].sent)
        sockets[0].push({"type": "HELLO_OK", "payload": "oops"})
        sockets[0].push({"type": "CHAT_ITEM_PROGRESS", "payload": [1, 2]})
        sockets[0].push({"type": "HELLO_OK", "payload": {"serverTime": "2026-01-01T00:00:00Z"}})
        ready = await client.wait_for_ready(1)
        alive = not client._task.done()
        await client.disconnect()
        return ready, alive, statuses

    ready, alive, statuses = asyncio.run(main())
    assert ready is True
    assert alive is True
    assert len(errors) == 1
    assert isinstance(errors[0], ProtocolError)
    assert errors[0].code == "WS_PROTOCOL"
    assert [m["type"] for m in received] == ["HELLO_OK"]
    assert ConnectionStatus.READY in [e.status for e in statuses]
