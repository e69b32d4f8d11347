"""Control channel to the remote coordinating process.

`ControlChannel` keeps local (inbound) subscriptions and leaves delivery of
outbound emits to a transport. `WebSocketControlChannel` is the socket
transport: JSON text frames over `websockets`, with ack ids for callback-style
requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from .errors import ChannelError
from .events import Emitter, ack_future

_LOGGER = logging.getLogger("spec_runner.channel")

CONNECT = "connect"
DISCONNECT = "disconnect"


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The socket control channel requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class ControlChannel:
    """Bidirectional event channel: `emit` goes out, `on` listens to what comes in."""

    def __init__(self) -> None:
        self._inbound = Emitter()

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        return self._inbound.on(event, handler)

    def once(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        return self._inbound.once(event, handler)

    def off(self, event: str | None = None, handler: Callable[..., Any] | None = None) -> None:
        self._inbound.off(event, handler)

    def listener_count(self, event: str) -> int:
        return self._inbound.listener_count(event)

    def emit(self, event: str, *args: Any) -> None:
        self._send(event, list(args))

    def request(self, event: str, *args: Any) -> Future:
        """Emit with a trailing ack callable; the Future resolves with the remote reply."""
        fut, ack = ack_future()
        self.emit(event, *args, ack)
        return fut

    def dispatch(self, event: str, *args: Any) -> bool:
        """Deliver an inbound event to local subscribers."""
        return self._inbound.emit(event, *args)

    def _send(self, event: str, args: list[Any]) -> None:
        raise NotImplementedError


class WebSocketControlChannel(ControlChannel):
    """Socket transport for the control channel.

    Frames:
    - `{"type": "emit", "event": str, "args": [...], "ackId"?: int}` in both directions.
    - `{"type": "ack", "id": int, "args": [...]}` answers an `ackId`.

    Outbound frames queue while disconnected (bounded) and flush in order once the
    socket is open. Reconnects back off exponentially.
    """

    def __init__(self, url: str, *, max_buffered: int = 500, open_timeout: float = 5.0) -> None:
        super().__init__()
        self.url = url
        self.open_timeout = float(open_timeout)
        self._outbox: deque[dict[str, Any]] = deque()
        self._max_buffered = max(1, int(max_buffered))
        self._next_ack_id = 1
        self._acks: dict[int, Callable[..., Any]] = {}
        self._ws: Any | None = None
        self._task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None
        self._connected: asyncio.Event | None = None
        self._closing = False
        self.last_error: str | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self, *, wait_timeout: float = 5.0) -> bool:
        """Start the connect loop; return True once connected within `wait_timeout`."""
        if self._task is None or self._task.done():
            self._closing = False
            self._wake = asyncio.Event()
            self._connected = asyncio.Event()
            self._task = asyncio.create_task(self._run(), name="spec-runner-channel")
        assert self._connected is not None
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=max(0.0, float(wait_timeout)))
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None

    def is_connected(self) -> bool:
        return self._ws is not None

    def status(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "connected": self.is_connected(),
            "buffered": len(self._outbox),
            "pendingAcks": len(self._acks),
            **({"lastError": self.last_error} if self.last_error else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    def _send(self, event: str, args: list[Any]) -> None:
        frame: dict[str, Any] = {"type": "emit", "event": event}
        if args and callable(args[-1]):
            ack_id = self._next_ack_id
            self._next_ack_id += 1
            self._acks[ack_id] = args[-1]
            args = args[:-1]
            frame["ackId"] = ack_id
        frame["args"] = args
        self._enqueue(frame)

    def _reply(self, ack_id: int) -> Callable[..., None]:
        def _ack(*values: Any) -> None:
            self._enqueue({"type": "ack", "id": ack_id, "args": list(values)})

        return _ack

    def _enqueue(self, frame: dict[str, Any]) -> None:
        if len(self._outbox) >= self._max_buffered:
            dropped = self._outbox.popleft()
            if "ackId" in dropped:
                self._acks.pop(dropped["ackId"], None)
            _LOGGER.warning("channel outbox full; dropped %s frame", dropped.get("event") or dropped.get("type"))
        self._outbox.append(frame)
        if self._wake is not None:
            self._wake.set()

    def _forget_sent_acks(self) -> None:
        """Drop callbacks for frames that went out on a closed socket.

        Frames still in the outbox are resent on reconnect with the same ack id, so
        their callbacks stay registered.
        """
        queued = {frame["ackId"] for frame in self._outbox if "ackId" in frame}
        lost = [ack_id for ack_id in self._acks if ack_id not in queued]
        for ack_id in lost:
            del self._acks[ack_id]
        if lost:
            _LOGGER.debug("dropped %d unanswered acks after disconnect", len(lost))

    def encode(self, frame: dict[str, Any]) -> str:
        try:
            return json.dumps(frame, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as exc:
            raise ChannelError(f"Cannot encode channel frame: {exc}") from exc

    async def _writer(self, ws: Any) -> None:
        assert self._wake is not None
        while True:
            while self._outbox:
                frame = self._outbox[0]
                await ws.send(self.encode(frame))
                self._outbox.popleft()
            self._wake.clear()
            await self._wake.wait()

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    def handle_frame(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except Exception:
            _LOGGER.debug("ignoring non-JSON channel frame")
            return
        if not isinstance(msg, dict):
            return
        args = msg.get("args")
        if not isinstance(args, list):
            args = []
        kind = msg.get("type")
        if kind == "ack":
            try:
                ack_id = int(msg.get("id"))
            except Exception:
                return
            cb = self._acks.pop(ack_id, None)
            if cb is None:
                _LOGGER.debug("ack for unknown id %s", ack_id)
                return
            cb(*args)
            return
        if kind == "emit":
            event = msg.get("event")
            if not isinstance(event, str) or not event:
                return
            ack_id = msg.get("ackId")
            if isinstance(ack_id, int):
                args = [*args, self._reply(ack_id)]
            self.dispatch(event, *args)

    async def _run(self) -> None:
        websockets = _import_websockets()
        backoff_s = 0.25
        max_backoff_s = 5.0
        assert self._connected is not None

        while not self._closing:
            connected = False
            try:
                async with websockets.connect(self.url, ping_interval=None, open_timeout=self.open_timeout) as ws:
                    self._ws = ws
                    connected = True
                    self.last_error = None
                    backoff_s = 0.25
                    self._connected.set()
                    _LOGGER.info("control channel connected: %s", self.url)
                    self.dispatch(CONNECT)

                    writer = asyncio.create_task(self._writer(ws))
                    try:
                        async for raw in ws:
                            try:
                                self.handle_frame(raw)
                            except Exception:
                                _LOGGER.exception("control channel handler failed")
                    finally:
                        writer.cancel()
                        with contextlib.suppress(asyncio.CancelledError, Exception):
                            await writer
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.last_error = str(exc)
                _LOGGER.warning("control channel error: %s", exc)
            finally:
                self._ws = None
                self._connected.clear()
                if connected:
                    self._forget_sent_acks()
                    self.dispatch(DISCONNECT)

            if self._closing:
                break
            await asyncio.sleep(backoff_s)
            backoff_s = min(backoff_s * 1.6, max_backoff_s)
