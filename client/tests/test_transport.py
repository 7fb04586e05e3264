"""Tests for WebSocketTransport with a scripted connect function."""
import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from photochat.realtime.transport import WebSocketTransport


class ScriptedSocket:
    """Yields the given frames, then ends as if the server closed."""

    def __init__(self, frames=(), hold_open=False):
        self.frames = list(frames)
        self.sent = []
        self.hold_open = hold_open
        self.closed = False

    async def send(self, frame):
        self.sent.append(json.loads(frame))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame
        if self.hold_open:
            await asyncio.Event().wait()


def scripted_connect(script, seen_headers):
    """Connect function that plays *script*: sockets, or exceptions to raise."""

    @asynccontextmanager
    async def connect(url, additional_headers=None):
        seen_headers.append(additional_headers)
        if not script:
            raise OSError("connection refused")
        step = script.pop(0)
        if isinstance(step, Exception):
            raise step
        yield step

    return connect


def frame(event, data=None):
    return json.dumps({"event": event, "data": data})


def make_transport(script, headers, events, **kwargs):
    async def on_event(name, data):
        events.append((name, data))

    kwargs.setdefault("reconnection_delay", 0)
    return WebSocketTransport(
        "ws://testserver/ws",
        "tok-1",
        on_event,
        connect_factory=scripted_connect(script, headers),
        **kwargs,
    )


async def run_to_end(transport):
    transport.open()
    await asyncio.wait_for(transport._task, timeout=1.0)


@pytest.mark.asyncio
async def test_frames_are_dispatched_with_bearer_handshake():
    headers, events = [], []
    socket = ScriptedSocket(
        [
            frame("message", {"_id": "m1"}),
            "not json",
            json.dumps({"data": "no event name"}),
            frame("typing", {"user": "u2"}),
        ]
    )
    transport = make_transport([socket], headers, events, reconnection=False)

    await run_to_end(transport)

    assert headers == [{"Authorization": "Bearer tok-1"}]
    assert events == [
        ("connect", None),
        ("message", {"_id": "m1"}),
        ("typing", {"user": "u2"}),
        ("disconnect", None),
    ]
    assert transport.running is False


@pytest.mark.asyncio
async def test_frames_emitted_while_disconnected_are_flushed():
    headers, events = [], []
    socket = ScriptedSocket()
    transport = make_transport([socket], headers, events, reconnection=False)

    await transport.emit("joinChat", "c1")
    await run_to_end(transport)

    assert socket.sent == [{"event": "joinChat", "data": "c1"}]


@pytest.mark.asyncio
async def test_send_buffer_is_bounded():
    headers, events = [], []
    socket = ScriptedSocket()
    transport = make_transport([socket], headers, events, reconnection=False, send_buffer_size=2)

    for n in range(4):
        await transport.emit("typing", {"n": n})
    await run_to_end(transport)

    assert [f["data"]["n"] for f in socket.sent] == [2, 3]


class BrokenSocket(ScriptedSocket):
    """Completes the handshake but fails every send."""

    async def send(self, frame):
        raise OSError("broken pipe")


@pytest.mark.asyncio
async def test_frame_survives_failed_flush():
    headers, events = [], []
    retry = ScriptedSocket()
    transport = make_transport([BrokenSocket(), retry], headers, events, reconnection_attempts=1)

    await transport.emit("joinChat", "c1")
    await run_to_end(transport)

    assert retry.sent == [{"event": "joinChat", "data": "c1"}]
    assert [name for name, _ in events][:3] == ["connect", "disconnect", "connect"]


@pytest.mark.asyncio
async def test_gives_up_after_bounded_attempts():
    headers, events = [], []
    transport = make_transport([], headers, events, reconnection_attempts=2)

    await run_to_end(transport)

    assert [name for name, _ in events] == ["connect_error"] * 3
    assert isinstance(events[0][1], OSError)
    assert len(headers) == 3


@pytest.mark.asyncio
async def test_reconnects_after_drop_and_resets_attempts():
    headers, events = [], []
    script = [ScriptedSocket(), OSError("blip"), ScriptedSocket()]
    transport = make_transport(script, headers, events, reconnection_attempts=2)

    await run_to_end(transport)

    # The budget restarts after the second handshake: two more failures follow.
    assert [name for name, _ in events] == [
        "connect",
        "disconnect",
        "connect_error",
        "connect",
        "disconnect",
        "connect_error",
        "connect_error",
    ]


@pytest.mark.asyncio
async def test_close_stops_the_loop():
    headers, events = [], []
    socket = ScriptedSocket(hold_open=True)
    transport = make_transport([socket], headers, events)

    transport.open()
    for _ in range(100):
        if transport.connected:
            break
        await asyncio.sleep(0.01)
    assert transport.connected

    await transport.close()

    assert socket.closed is True
    assert transport.running is False
    assert transport.connected is False
    assert len(headers) == 1
