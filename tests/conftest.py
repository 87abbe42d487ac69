"""Shared fakes for session, upload and engine tests."""

import asyncio
import itertools
import json

import pytest


class FakeSocket:
    """Stands in for a websockets connection: frames pushed by the test are
    yielded by async iteration, frames sent by the client are recorded."""

    def __init__(self):
        self.sent = []
        self.inbox = asyncio.Queue()
        self.close_code = None
        self.close_reason = None
        self.transport = None
        self.closed = False

    def push(self, msg):
        self.inbox.put_nowait(json.dumps(msg))

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=""):
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self.inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeSession:
    """In-process replacement for ThreadSessionClient.

    ``responder(type, payload, request_id)`` may return reply messages; they
    are delivered to listeners on the next loop iteration, like real frames.
    """

    _ids = itertools.count(1)

    def __init__(self, thread_id="t1", connected=True, responder=None, **kwargs):
        self.thread_id = thread_id
        self.connected = connected
        self.responder = responder
        self.fail_sends = False
        self.kwargs = kwargs
        self.sent = []
        self.listeners = []
        self.connect_calls = 0
        self.disconnected = None

    async def connect(self):
        self.connect_calls += 1

    async def disconnect(self, code=1000, reason="client_disconnect"):
        self.disconnected = (code, reason)
        self.connected = False

    def is_connected(self):
        return self.connected

    async def wait_for_ready(self, timeout):
        return self.connected

    def new_request_id(self):
        return f"req-{next(self._ids)}"

    def send(self, msg_type, payload=None, request_id=None):
        if not self.connected or self.fail_sends:
            return False
        body = dict(payload or {})
        self.sent.append({"type": msg_type, "payload": body, "requestId": request_id})
        if self.responder is not None:
            loop = asyncio.get_running_loop()
            for reply in self.responder(msg_type, body, request_id) or []:
                loop.call_soon(self.deliver, reply)
        return True

    def sent_types(self):
        return [m["type"] for m in self.sent]

    def deliver(self, msg):
        for listener in list(self.listeners):
            listener(msg)

    def on_message(self, listener):
        self.listeners.append(listener)

        def off():
            if listener in self.listeners:
                self.listeners.remove(listener)

        return off

    def expect(self, predicate):
        fut = asyncio.get_running_loop().create_future()

        def listener(msg):
            if fut.done():
                return
            try:
                if predicate(msg):
                    fut.set_result(msg)
            except Exception as e:
                fut.set_exception(e)

        off = self.on_message(listener)
        fut.add_done_callback(lambda _: off())
        return fut

    def get_buffered_amount(self):
        return 0

    async def wait_for_buffered_below(self, max_bytes, timeout):
        return None


@pytest.fixture
def fake_socket_cls():
    return FakeSocket


@pytest.fixture
def fake_session_cls():
    return FakeSession
