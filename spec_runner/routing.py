"""Declarative forwarding of execution-engine events.

The routing table is a fixed tuple of `Route` entries, one per engine event name.
Each `RouteKind` maps to exactly one forwarding rule in `EventRouter`; a table is
validated once (names must be unique) and wired once at start.
"""

from __future__ import annotations

import copy
import dataclasses
import enum
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any, Protocol

from .events import Emitter, ReportBus
from .records import STATE_CHANGED, LogRecord, LogStore, TestStore

_LOGGER = logging.getLogger("spec_runner.routing")

AUTOMATION_REQUEST = "automation:request"
CLIENT_REQUEST = "client:request"
RUNNABLES_READY = "runnables:ready"
LOG_ADDED = "reporter:log:add"
LOG_STATE_CHANGED = "reporter:log:state:changed"


class RouteKind(enum.Enum):
    DUAL = "dual"
    CHANNEL = "channel"
    AUTOMATION = "automation"
    TEST_LIFECYCLE = "test_lifecycle"
    INTERNAL = "internal"


@dataclasses.dataclass(frozen=True, slots=True)
class Route:
    event: str
    kind: RouteKind


class EventSource(Protocol):
    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...


class EventSink(Protocol):
    def emit(self, event: str, *args: Any) -> Any: ...


def _routes(kind: RouteKind, names: str) -> tuple[Route, ...]:
    return tuple(Route(name, kind) for name in names.split())


DEFAULT_ROUTES: tuple[Route, ...] = (
    *_routes(RouteKind.DUAL, "run:start run:end"),
    *_routes(RouteKind.CHANNEL, "fixture request history:entries exec domain:change"),
    *_routes(RouteKind.TEST_LIFECYCLE, "test:before:hooks test:after:hooks"),
    *_routes(RouteKind.AUTOMATION, "get:cookies get:cookie set:cookie clear:cookies clear:cookie"),
    *_routes(RouteKind.INTERNAL, "viewport config stop url:changed page:loading"),
)


class RoutingTable:
    def __init__(self, routes: Iterable[Route] = DEFAULT_ROUTES) -> None:
        items = tuple(routes)
        seen: set[str] = set()
        for route in items:
            if not isinstance(route, Route):
                raise TypeError(f"not a Route: {route!r}")
            if route.event in seen:
                raise ValueError(f"event routed twice: {route.event}")
            seen.add(route.event)
        self._routes = items

    def __iter__(self) -> Iterator[Route]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def events(self, kind: RouteKind) -> tuple[str, ...]:
        return tuple(r.event for r in self._routes if r.kind is kind)

    def kind_of(self, event: str) -> RouteKind | None:
        for route in self._routes:
            if route.event == event:
                return route.kind
        return None


def reportable_test(test: Any) -> Any:
    """Copy of a test payload safe to hand to the report layer (error as string).

    Mapping and attribute-style payloads are both copied; the stored original keeps
    the error object.
    """
    if isinstance(test, dict):
        if test.get("err") is None:
            return test
        return {**test, "err": str(test["err"])}
    err = getattr(test, "err", None)
    if err is None:
        return test
    if dataclasses.is_dataclass(test) and not isinstance(test, type):
        return dataclasses.replace(test, err=str(err))
    clone = copy.copy(test)
    clone.err = str(err)
    return clone


class EventRouter:
    """Wires engine events to the internal bus, the report bus and the control channel."""

    def __init__(
        self,
        *,
        engine: EventSource,
        local_bus: Emitter,
        report_bus: ReportBus,
        channel: EventSink,
        logs: LogStore,
        tests: TestStore,
        table: RoutingTable | None = None,
    ) -> None:
        self.engine = engine
        self.local_bus = local_bus
        self.report_bus = report_bus
        self.channel = channel
        self.logs = logs
        self.tests = tests
        self.table = table or RoutingTable()
        self._wired = False
        self._log_subscriptions: list[tuple[LogRecord, Callable[..., Any]]] = []

    def wire(self) -> None:
        if self._wired:
            return
        rules: dict[RouteKind, Callable[[str], Callable[..., Any]]] = {
            RouteKind.DUAL: self._dual,
            RouteKind.CHANNEL: self._channel_only,
            RouteKind.AUTOMATION: self._automation,
            RouteKind.TEST_LIFECYCLE: self._test_lifecycle,
            RouteKind.INTERNAL: self._internal,
        }
        for route in self.table:
            self.engine.on(route.event, rules[route.kind](route.event))
        self.engine.on("initialized", self._on_initialized)
        self.engine.on("log", self._on_log)
        self.engine.on("message", self._on_message)
        self._wired = True
        _LOGGER.debug("routing wired: %d table routes", len(self.table))

    # ─────────────────────────────────────────────────────────────────────────
    # Forwarding rules
    # ─────────────────────────────────────────────────────────────────────────

    def _dual(self, event: str) -> Callable[..., Any]:
        def _forward(*args: Any) -> None:
            self.local_bus.emit(event, *args)
            self.report_bus.emit(event, *args)

        return _forward

    def _channel_only(self, event: str) -> Callable[..., Any]:
        def _forward(*args: Any) -> None:
            self.channel.emit(event, *args)

        return _forward

    def _automation(self, event: str) -> Callable[..., Any]:
        def _forward(*args: Any) -> None:
            self.channel.emit(AUTOMATION_REQUEST, event, *args)

        return _forward

    def _test_lifecycle(self, event: str) -> Callable[..., Any]:
        def _forward(test: Any) -> None:
            self.tests.add(test)
            self.report_bus.emit(event, reportable_test(test))

        return _forward

    def _internal(self, event: str) -> Callable[..., Any]:
        def _forward(*args: Any) -> None:
            self.local_bus.emit(event, *args)

        return _forward

    # ─────────────────────────────────────────────────────────────────────────
    # Engine lifecycle events
    # ─────────────────────────────────────────────────────────────────────────

    def _on_initialized(self, payload: Any) -> None:
        runner = payload.get("runner") if isinstance(payload, dict) else getattr(payload, "runner", None)
        if runner is None:
            _LOGGER.warning("initialized event without runner")
            return
        self.report_bus.emit(RUNNABLES_READY, runner.get_normalized_runnables())

    def _on_log(self, log: LogRecord) -> None:
        self.logs.add(log)

        def _assign_row(fut: Any) -> None:
            if fut.cancelled() or fut.exception() is not None:
                return
            log.set("row", fut.result())

        self.report_bus.request(LOG_ADDED, log.to_json()).add_done_callback(_assign_row)

        def _state_changed(*_args: Any) -> None:
            self.report_bus.emit(LOG_STATE_CHANGED, log.to_json())

        log.on(STATE_CHANGED, _state_changed)
        self._log_subscriptions.append((log, _state_changed))

    def _on_message(self, msg: Any, data: Any = None, cb: Callable[..., Any] | None = None) -> None:
        if cb is None:
            self.channel.emit(CLIENT_REQUEST, msg, data)
        else:
            self.channel.emit(CLIENT_REQUEST, msg, data, cb)

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    def release_log_subscriptions(self) -> int:
        released = 0
        for log, handler in self._log_subscriptions:
            log.off(STATE_CHANGED, handler)
            released += 1
        self._log_subscriptions.clear()
        return released

    @property
    def log_subscription_count(self) -> int:
        return len(self._log_subscriptions)
