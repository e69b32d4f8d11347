from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

import pytest

from spec_runner.channel import WebSocketControlChannel


def _frames(channel: WebSocketControlChannel) -> list[dict[str, Any]]:
    return list(channel._outbox)  # noqa: SLF001


def test_emit_buffers_frames_while_disconnected() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1")
    channel.emit("watch:test:file", "cypress/integration/app_spec.js")
    channel.emit("automation:request", "get:cookies", {"domain": "localhost"})

    assert _frames(channel) == [
        {"type": "emit", "event": "watch:test:file", "args": ["cypress/integration/app_spec.js"]},
        {"type": "emit", "event": "automation:request", "args": ["get:cookies", {"domain": "localhost"}]},
    ]
    assert channel.status()["buffered"] == 2
    assert channel.is_connected() is False


def test_outbox_is_bounded() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1", max_buffered=2)
    for i in range(3):
        channel.emit("exec", i)
    assert [f["args"] for f in _frames(channel)] == [[1], [2]]


def test_request_sends_ack_id_and_resolves_on_ack_frame() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1")
    fut = channel.request("get:current:runnable")

    frame = _frames(channel)[0]
    assert frame["event"] == "get:current:runnable"
    assert frame["args"] == []
    ack_id = frame["ackId"]

    channel.handle_frame(json.dumps({"type": "ack", "id": ack_id, "args": [{"id": "r1"}]}))
    assert fut.result(timeout=0) == {"id": "r1"}
    assert channel.status()["pendingAcks"] == 0


def test_queued_request_still_resolves_after_disconnect() -> None:
    class _ClosingSocket:
        def __init__(self) -> None:
            self.sent: list[dict[str, Any]] = []

        async def send(self, data: str) -> None:
            if self.sent:
                raise ConnectionError("socket closed")
            self.sent.append(json.loads(data))

    channel = WebSocketControlChannel("ws://127.0.0.1:1")
    ws = _ClosingSocket()

    async def _main() -> None:
        channel._wake = asyncio.Event()  # noqa: SLF001
        with pytest.raises(ConnectionError):
            await channel._writer(ws)  # noqa: SLF001
        channel._forget_sent_acks()  # noqa: SLF001

    answered = channel.request("is:automation:connected")
    queued = channel.request("get:current:runnable")
    asyncio.run(_main())

    assert [f["event"] for f in ws.sent] == ["is:automation:connected"]
    assert [f["event"] for f in _frames(channel)] == ["get:current:runnable"]
    assert channel.status()["pendingAcks"] == 1

    channel.handle_frame(json.dumps({"type": "ack", "id": ws.sent[0]["ackId"], "args": [True]}))
    assert not answered.done()

    channel.handle_frame(json.dumps({"type": "ack", "id": _frames(channel)[0]["ackId"], "args": [{"id": "r1"}]}))
    assert queued.result(timeout=0) == {"id": "r1"}


def test_dropped_frame_releases_its_ack() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1", max_buffered=1)
    channel.request("get:current:runnable")
    channel.emit("exec", 1)
    assert channel.status()["pendingAcks"] == 0


def test_inbound_emit_reaches_listeners_and_can_be_acked() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1")
    seen: list[Any] = []

    def _handler(value: Any, reply) -> None:  # type: ignore[no-untyped-def]
        seen.append(value)
        reply("ok", 2)

    channel.on("backend:request", _handler)
    channel.handle_frame(json.dumps({"type": "emit", "event": "backend:request", "args": ["x"], "ackId": 11}))

    assert seen == ["x"]
    assert _frames(channel) == [{"type": "ack", "id": 11, "args": ["ok", 2]}]


def test_malformed_frames_are_ignored() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1")
    seen: list[Any] = []
    channel.on("runner:restart", lambda *args: seen.append(args))

    channel.handle_frame("not json")
    channel.handle_frame(json.dumps([1, 2]))
    channel.handle_frame(json.dumps({"type": "emit", "event": ""}))
    channel.handle_frame(json.dumps({"type": "ack", "id": 999, "args": []}))
    channel.handle_frame(json.dumps({"type": "emit", "event": "runner:restart", "args": "bad"}))

    assert seen == [()]


def test_off_removes_inbound_listeners() -> None:
    channel = WebSocketControlChannel("ws://127.0.0.1:1")
    seen: list[Any] = []
    channel.on("runner:abort", lambda: seen.append(1))
    channel.off()
    channel.handle_frame(json.dumps({"type": "emit", "event": "runner:abort"}))
    assert seen == []


def test_websocket_roundtrip() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    async def _main() -> None:
        received: list[dict[str, Any]] = []
        got_ack = asyncio.Event()

        async def _server(ws) -> None:  # type: ignore[no-untyped-def]
            async for raw in ws:
                msg = json.loads(raw)
                received.append(msg)
                if msg.get("event") == "watch:test:file":
                    await ws.send(json.dumps({"type": "emit", "event": "runner:restart", "args": []}))
                    await ws.send(
                        json.dumps({"type": "emit", "event": "is:ready", "args": [1], "ackId": 5})
                    )
                elif msg.get("event") == "get:current:runnable":
                    await ws.send(json.dumps({"type": "ack", "id": msg["ackId"], "args": [None]}))
                elif msg.get("type") == "ack":
                    got_ack.set()

        async with websockets.serve(_server, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            channel = WebSocketControlChannel(f"ws://127.0.0.1:{port}")
            events: list[Any] = []
            channel.on("connect", lambda: events.append("connect"))
            channel.on("runner:restart", lambda: events.append("restart"))
            channel.on("is:ready", lambda value, reply: reply(value + 1))

            # Buffered before the socket is open; flushed in order on connect.
            channel.emit("watch:test:file", "app_spec.js")
            try:
                assert await channel.start(wait_timeout=3.0) is True
                fut = channel.request("get:current:runnable")
                assert await asyncio.wait_for(asyncio.wrap_future(fut), timeout=3.0) is None
                await asyncio.wait_for(got_ack.wait(), timeout=3.0)
            finally:
                with contextlib.suppress(Exception):
                    await channel.close()

        assert events[:2] == ["connect", "restart"]
        assert received[0] == {"type": "emit", "event": "watch:test:file", "args": ["app_spec.js"]}
        assert {"type": "ack", "id": 5, "args": [2]} in received

    asyncio.run(_main())
