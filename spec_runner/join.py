"""Explicit fan-in over named completion signals.

A restart may only reset run state after every participant has settled. The
join completes when the set of pending participants is empty; a participant that
fails fails the join, and an optional timeout bounds the wait.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable
from concurrent.futures import Future
from typing import Any

from .errors import RestartTimeoutError, RunnerError


def as_awaitable(value: Any) -> Awaitable[Any]:
    """Normalize a collaborator's return value into something awaitable.

    Engines may return None (synchronous), a coroutine/awaitable, or a
    `concurrent.futures.Future`.
    """
    if isinstance(value, Future):
        return asyncio.wrap_future(value)
    if inspect.isawaitable(value):
        return value

    async def _done() -> Any:
        return value

    return _done()


class RestartJoin:
    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._pending: set[str] = set()
        self._settled = asyncio.Event()
        self._error: BaseException | None = None
        self._results: dict[str, Any] = {}
        self._cancelling = False

    def add(self, name: str, work: Any) -> None:
        if name in self._tasks:
            raise ValueError(f"duplicate join participant: {name}")
        task = asyncio.ensure_future(as_awaitable(work))
        self._tasks[name] = task
        self._pending.add(name)
        task.add_done_callback(lambda t, n=name: self._settle(n, t))

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(sorted(self._pending))

    @property
    def results(self) -> dict[str, Any]:
        return dict(self._results)

    def _settle(self, name: str, task: asyncio.Task) -> None:
        self._pending.discard(name)
        if task.cancelled():
            # Cancelled from outside the join: the work never finished.
            if not self._cancelling and self._error is None:
                self._error = RunnerError(f"restart participant {name} was cancelled")
                self._settled.set()
        elif task.exception() is not None:
            if self._error is None:
                self._error = task.exception()
            self._settled.set()
        else:
            self._results[name] = task.result()
        if not self._pending:
            self._settled.set()

    async def wait(self, timeout: float | None = None) -> dict[str, Any]:
        if not self._tasks:
            return {}
        try:
            if timeout is None:
                await self._settled.wait()
            else:
                await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pending = self.pending
            await self.cancel()
            raise RestartTimeoutError(pending, timeout) from None
        except asyncio.CancelledError:
            await self.cancel()
            raise
        if self._error is not None:
            await self.cancel()
            raise self._error
        return self.results

    async def cancel(self) -> None:
        self._cancelling = True
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        # Let cancellation callbacks (listener removal) run before returning.
        await asyncio.sleep(0)
