"""In-process publish/subscribe primitives.

`Emitter` is the Internal Event Bus (and the base for anything that exposes
`on`/`once`/`off`/`emit`). `ReportBus` adds ack-style requests so a caller can
learn a value the report layer assigns later (e.g. a log's display row).
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

Handler = Callable[..., Any]


class Emitter:
    """Synchronous event emitter.

    - Subscribers run in registration order.
    - Exceptions raised by a subscriber propagate to the caller of `emit`.
    - A handler registered with `once` is removed before it is invoked.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Handler, bool]]] = {}

    def on(self, event: str, handler: Handler) -> Handler:
        self._listeners.setdefault(event, []).append((handler, False))
        return handler

    def once(self, event: str, handler: Handler) -> Handler:
        self._listeners.setdefault(event, []).append((handler, True))
        return handler

    def off(self, event: str | None = None, handler: Handler | None = None) -> None:
        """Remove listeners.

        `off()` removes everything, `off(event)` clears one event, and
        `off(event, handler)` removes the first matching registration.
        """
        if event is None:
            self._listeners.clear()
            return
        if handler is None:
            self._listeners.pop(event, None)
            return
        entries = self._listeners.get(event)
        if not entries:
            return
        for i, (fn, _once) in enumerate(entries):
            if fn is handler:
                del entries[i]
                break
        if not entries:
            self._listeners.pop(event, None)

    def remove_all_listeners(self, event: str | None = None) -> None:
        self.off(event)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        entries = self._listeners.get(event)
        if not entries:
            return False
        # Snapshot: handlers may subscribe/unsubscribe while we iterate.
        snapshot = list(entries)
        for entry in snapshot:
            if entry[1] and entry in entries:
                entries.remove(entry)
        if not entries:
            self._listeners.pop(event, None)
        for fn, _once in snapshot:
            fn(*args)
        return True


def ack_future(*, unwrap: bool = True) -> tuple[Future, Callable[..., None]]:
    """Return a pending Future and the ack callable that settles it.

    With `unwrap`, a single ack argument becomes the result; otherwise the result
    is the tuple of ack arguments. Late or repeated acks are ignored.
    """
    fut: Future = Future()

    def _ack(*values: Any) -> None:
        if fut.done():
            return
        if unwrap:
            fut.set_result(values[0] if values else None)
        else:
            fut.set_result(values)

    return fut, _ack


class ReportBus(Emitter):
    """Event channel whose subscribers live in the reporting surface."""

    def request(self, event: str, *args: Any) -> Future:
        """Emit `event` with a trailing ack callable; resolve when a subscriber acks."""
        fut, ack = ack_future()
        self.emit(event, *args, ack)
        return fut

    def rendezvous(self, request_event: str, reply_event: str) -> Future:
        """Register a one-shot `reply_event` listener, then emit `request_event`.

        The listener is in place before the request goes out, so a subscriber that
        replies synchronously is still observed. Cancelling the returned Future
        removes the listener.
        """
        fut: Future = Future()

        def _reply(*_args: Any) -> None:
            if not fut.done():
                fut.set_result(None)

        def _on_done(f: Future) -> None:
            if f.cancelled():
                self.off(reply_event, _reply)

        self.once(reply_event, _reply)
        fut.add_done_callback(_on_done)
        try:
            self.emit(request_event)
        except BaseException:
            fut.cancel()
            raise
        return fut
