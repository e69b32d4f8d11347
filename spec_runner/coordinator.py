"""Run lifecycle coordinator.

Starts the execution engine, wires event routing between the engine, the
internal bus, the report bus and the control channel, and restarts the run when
a rerun signal arrives.

Restart protocol (Running -> Restarting -> Running):
1. `engine.abort()` and the report-bus rendezvous (`reporter:restart:test:run`
   answered by `reporter:restarted`) start together.
2. Both must settle (`RestartJoin`); only then are per-log subscriptions
   released and the log/test stores reset.
3. `restart` is emitted on the internal bus.

Restarts are serialized: a trigger that arrives while one is in flight queues a
single follow-up restart, and further triggers fold into that slot.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from .channel import CONNECT
from .config import pick_driver_config
from .console import RunConsole, format_error
from .engine import ExecutionEngine
from .events import Emitter, ReportBus
from .join import RestartJoin, as_awaitable
from .markers import InMemoryRunMarkers, RunMarkers
from .records import LogRecord, LogStore, TestStore
from .routing import EventRouter, RoutingTable
from .state import AutomationStatus, RunState

_LOGGER = logging.getLogger("spec_runner.coordinator")

RERUN_EVENTS: tuple[str, ...] = ("runner:restart", "watched:file:changed")

RESTART_REQUESTED = "reporter:restart:test:run"
RESTARTED = "reporter:restarted"
RESET_CURRENT_RUNNABLE_LOGS = "reporter:reset:current:runnable:logs"
RESTART_COMPLETE = "restart"


class CoordinatorState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class LifecycleCoordinator:
    def __init__(
        self,
        *,
        engine: ExecutionEngine,
        channel: Any,
        report_bus: ReportBus | None = None,
        local_bus: Emitter | None = None,
        window: Emitter | None = None,
        state: RunState | None = None,
        logs: LogStore | None = None,
        tests: TestStore | None = None,
        console: RunConsole | None = None,
        markers: RunMarkers | None = None,
        table: RoutingTable | None = None,
        restart_timeout: float | None = None,
    ) -> None:
        self.engine = engine
        self.channel = channel
        self.report_bus = report_bus or ReportBus()
        self.local_bus = local_bus or Emitter()
        self.window = window
        self.state = state or RunState()
        self.logs = logs or LogStore()
        self.tests = tests or TestStore()
        self.console = console or RunConsole()
        self.markers = markers or InMemoryRunMarkers()
        self.restart_timeout = restart_timeout

        self.router = EventRouter(
            engine=engine,
            local_bus=self.local_bus,
            report_bus=self.report_bus,
            channel=channel,
            logs=self.logs,
            tests=self.tests,
            table=table,
        )

        self._status = CoordinatorState.IDLE
        self._disconnect_bound = False
        self._restart_task: asyncio.Task | None = None
        self._restart_queued = False
        self._abort_tasks: set[asyncio.Future] = set()
        self._window_handlers: list[tuple[str, Callable[..., Any]]] = []

        self.channel.on(CONNECT, self._on_channel_connect)

    @property
    def status(self) -> CoordinatorState:
        return self._status

    def _set_status(self, status: CoordinatorState) -> None:
        if status is not self._status:
            _LOGGER.debug("coordinator %s -> %s", self._status.value, status.value)
        self._status = status

    def _on_channel_connect(self, *_args: Any) -> None:
        self.channel.emit("runner:connected")

    # ─────────────────────────────────────────────────────────────────────────
    # Connectivity
    # ─────────────────────────────────────────────────────────────────────────

    def ensure_connectivity(self, info: Any = None) -> Future:
        fut: Future = self.channel.request("is:automation:connected", info)
        fut.add_done_callback(self._on_connectivity)
        return fut

    def _on_connectivity(self, fut: Future) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        connected = bool(fut.result())
        self.state.set_automation_status(AutomationStatus.CONNECTED if connected else AutomationStatus.MISSING)
        if not self._disconnect_bound:
            self._disconnect_bound = True
            self.channel.on("automation:disconnected", self._on_automation_disconnected)

    def _on_automation_disconnected(self, *_args: Any) -> None:
        self.state.set_automation_status(AutomationStatus.DISCONNECTED)

    # ─────────────────────────────────────────────────────────────────────────
    # Start / run / stop
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, config: dict[str, Any] | None, spec_source: str | None) -> None:
        if self._status is not CoordinatorState.IDLE:
            raise RuntimeError(f"coordinator cannot start from state {self._status.value}")
        self._set_status(CoordinatorState.STARTING)

        self.engine.configure(pick_driver_config(config))
        self.engine.start()
        self.channel.emit("watch:test:file", spec_source)

        self.router.wire()

        self.channel.on("runner:console:error", self._on_console_error)
        self.channel.on("runner:console:log", self._on_console_log)
        for event in RERUN_EVENTS:
            self.channel.on(event, self.request_restart)
        self.channel.on("runner:abort", self._on_abort)
        self.channel.on("runner:show:snapshot", self._on_show_snapshot)
        self.channel.on("runner:hide:snapshot", self._on_hide_snapshot)

        if self.window is not None:
            self._bind_window("unload", self.handle_unload)
            self._bind_window("beforeunload", self.handle_before_unload)

        self._set_status(CoordinatorState.RUNNING)
        _LOGGER.info("run started for %s", spec_source)

    def run(self, target: Any, frame: Any = None) -> Future:
        """Initialize the engine and run it once the current runnable is known."""
        self.engine.initialize(target, frame)
        fut: Future = self.channel.request("get:current:runnable")
        fut.add_done_callback(self._on_current_runnable)
        return fut

    def _on_current_runnable(self, fut: Future) -> None:
        if fut.cancelled():
            return
        runnable = fut.result()
        if runnable:
            # Rerun mid-test after navigating to a new origin.
            self.report_bus.emit(RESET_CURRENT_RUNNABLE_LOGS)
        self.engine.run(lambda *_: None)

    def stop(self) -> None:
        self.local_bus.remove_all_listeners()
        self.engine.off()
        self.channel.off()
        self.router.release_log_subscriptions()
        if self.window is not None:
            for event, handler in self._window_handlers:
                self.window.off(event, handler)
        self._window_handlers.clear()
        self._restart_queued = False
        task = self._restart_task
        if task is not None and not task.done():
            task.cancel()
        for pending in list(self._abort_tasks):
            pending.cancel()
        self._set_status(CoordinatorState.STOPPED)
        _LOGGER.info("run stopped")

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        return self.local_bus.on(event, handler)

    def launch_browser(self, browser: Any = None, location: str | None = None) -> None:
        name = None
        if isinstance(browser, dict):
            name = browser.get("name")
        elif browser is not None:
            name = getattr(browser, "name", None)
        self.channel.emit("reload:browser", location, name)

    # ─────────────────────────────────────────────────────────────────────────
    # Restart
    # ─────────────────────────────────────────────────────────────────────────

    def request_restart(self, *_args: Any) -> asyncio.Task | None:
        """Rerun trigger handler; schedules a restart on the running loop."""
        if self._status in (CoordinatorState.IDLE, CoordinatorState.STOPPED):
            _LOGGER.debug("restart ignored in state %s", self._status.value)
            return None
        task = self._restart_task
        if task is not None and not task.done():
            self._restart_queued = True
            return task
        self._restart_queued = False
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._restart_loop(), name="spec-runner-restart")
        task.add_done_callback(self._on_restart_done)
        self._restart_task = task
        return task

    async def _restart_loop(self) -> None:
        while True:
            try:
                await self.restart()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                _LOGGER.error("restart failed: %s", exc, exc_info=exc)
            if not self._restart_queued or self._status is CoordinatorState.STOPPED:
                return
            self._restart_queued = False

    def _on_restart_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("restart failed: %s", exc, exc_info=exc)

    async def restart(self) -> None:
        self._set_status(CoordinatorState.RESTARTING)
        join = RestartJoin()
        try:
            join.add("abort", self.engine.abort())
            join.add("rendezvous", self.report_bus.rendezvous(RESTART_REQUESTED, RESTARTED))
            await join.wait(self.restart_timeout)
        except BaseException:
            if join.pending:
                await join.cancel()
            if self._status is CoordinatorState.RESTARTING:
                self._set_status(CoordinatorState.RUNNING)
            raise

        self.router.release_log_subscriptions()
        self.logs.reset()
        self.tests.reset()
        self.local_bus.emit(RESTART_COMPLETE)
        self._set_status(CoordinatorState.RUNNING)
        _LOGGER.info("run restarted")

    # ─────────────────────────────────────────────────────────────────────────
    # Window lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def _bind_window(self, event: str, handler: Callable[..., Any]) -> None:
        assert self.window is not None
        self.window.on(event, handler)
        self._window_handlers.append((event, handler))

    def handle_unload(self, *_args: Any) -> None:
        self.markers.clear_all()

    def handle_before_unload(self, *_args: Any) -> None:
        # The report bus must still be attached when the restart notice goes out.
        self.report_bus.emit(RESTART_REQUESTED)
        self.markers.clear_all()
        self.markers.set_unload()
        self.state.set_unload()

    # ─────────────────────────────────────────────────────────────────────────
    # Control channel requests
    # ─────────────────────────────────────────────────────────────────────────

    def _on_console_error(self, test_id: Any) -> None:
        test = self.tests.get(test_id)
        if test is None:
            self.console.log_error("No error found for test id", test_id)
            return
        err = test.get("err") if isinstance(test, dict) else getattr(test, "err", None)
        self.console.clear_log()
        self.console.log_error(format_error(err))

    def _on_console_log(self, log_id: Any) -> None:
        def _show(log: LogRecord) -> None:
            self.console.clear_log()
            self.console.log_formatted(log)

        self.with_log(log_id, _show)

    def _on_abort(self, *_args: Any) -> None:
        result = self.engine.abort()
        if not isinstance(result, Future) and not inspect.isawaitable(result):
            return
        task = asyncio.ensure_future(as_awaitable(result))
        self._abort_tasks.add(task)
        task.add_done_callback(self._on_abort_done)

    def _on_abort_done(self, task: asyncio.Future) -> None:
        self._abort_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("abort failed: %s", exc, exc_info=exc)

    def _on_show_snapshot(self, log_id: Any) -> None:
        self.with_log(log_id, lambda log: self.local_bus.emit("show:snapshot", log.get("snapshots"), log.to_json()))

    def _on_hide_snapshot(self, *_args: Any) -> None:
        self.local_bus.emit("hide:snapshot")

    def with_log(self, log_id: Any, found: Callable[[LogRecord], Any]) -> bool:
        log = self.logs.get(log_id)
        if log is None:
            self.console.log_error("No log found for log id", log_id)
            return False
        found(log)
        return True
