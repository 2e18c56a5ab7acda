import time

import pytest

from evbridge.event import Event, EventExt
from evbridge.server import (
    HeaderCarrier,
    Receiver,
    Reply,
    Server,
    Transport,
    chain,
    current_transport,
)


class FakeReceiver(Receiver):
    def __init__(self, events=()):
        self.events = list(events)
        self.closed = False

    def receive(self, handler):
        return [handler(evt, {"X-Trace": "abc"}) for evt in self.events]

    def close(self):
        self.closed = True
        return "closed"


def _evt(source="s"):
    return EventExt(event=Event(id=1, source=source))


def test_header_carrier_is_case_insensitive():
    hc = HeaderCarrier({"Trace-Id": "abc"})
    assert hc.get("trace-id") == "abc"
    hc.add("TRACE-ID", "def")
    assert hc.values("Trace-Id") == ["abc", "def"]
    hc.set("trace-id", "xyz")
    assert hc.values("trace-id") == ["xyz"]
    assert hc.keys() == ["trace-id"]
    assert "TRACE-id" in hc


def test_header_carrier_ignores_empty_and_missing():
    hc = HeaderCarrier()
    hc.set("k", "")
    hc.set("", "v")
    hc.add("", "v")
    assert len(hc) == 0
    assert hc.get("k") == ""
    assert hc.values("k") == []


def test_handle_exposes_transport():
    seen = {}

    def handler(evt):
        tr = current_transport()
        seen["transport"] = tr
        tr.reply_header.set("Reply-Key", evt.event.source)
        return evt.event.source

    srv = Server(FakeReceiver(), handler, endpoint="ep", operation="op")
    reply = srv.handle(_evt("src"), {"Trace": ["a", "b"]})
    tr = seen["transport"]
    assert isinstance(tr, Transport)
    assert tr.kind == "event"
    assert (tr.endpoint, tr.operation) == ("ep", "op")
    assert tr.request_header.values("trace") == ["a", "b"]
    assert reply == Reply(body="src", header=tr.reply_header)
    assert reply.header.get("reply-key") == "src"
    assert current_transport() is None


def test_timeout_sets_deadline():
    deadlines = []
    before = time.monotonic()
    srv = Server(FakeReceiver(), lambda e: deadlines.append(current_transport().deadline), timeout=5)
    srv.handle(_evt())
    assert deadlines[0] >= before + 5
    Server(FakeReceiver(), lambda e: deadlines.append(current_transport().deadline), timeout=0).handle(
        _evt()
    )
    assert deadlines[1] is None


def test_middleware_order():
    calls = []

    def make(name):
        def middleware(nxt):
            def wrapped(evt):
                calls.append(name)
                return nxt(evt)

            return wrapped

        return middleware

    srv = Server(FakeReceiver(), lambda e: calls.append("handler"), middleware=[make("a"), make("b")])
    srv.handle(_evt())
    assert calls == ["a", "b", "handler"]


def test_chain_can_transform_result():
    def upper(nxt):
        return lambda evt: nxt(evt).upper()

    def suffix(nxt):
        return lambda evt: nxt(evt) + "!"

    handler = chain(upper, suffix)(lambda evt: evt.event.source)
    assert handler(_evt("abc")) == "ABC!"


def test_handler_error_propagates_and_resets_transport():
    def handler(evt):
        raise KeyError(evt.event.source)

    srv = Server(FakeReceiver(), handler)
    with pytest.raises(KeyError):
        srv.handle(_evt())
    assert current_transport() is None


def test_start_and_stop_use_receiver():
    receiver = FakeReceiver([_evt("one"), _evt("two")])
    srv = Server(receiver, lambda e: current_transport().request_header.get("x-trace") + e.event.source)
    replies = srv.start()
    assert [r.body for r in replies] == ["abcone", "abctwo"]
    assert srv.stop() == "closed"
    assert receiver.closed