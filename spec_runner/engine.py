"""Execution engine boundary.

The engine is a black box that runs test code and emits lifecycle events
(`initialized`, `log`, hook events, routed events, `message`).
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any, Protocol


class ExecutionEngine(Protocol):
    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...

    def off(self, event: str | None = None, handler: Callable[..., Any] | None = None) -> None: ...

    def configure(self, config: dict[str, Any]) -> None: ...

    def start(self) -> None: ...

    def initialize(self, target: Any, frame: Any) -> None: ...

    def run(self, on_complete: Callable[..., Any]) -> Any: ...

    # May return None, an awaitable, or a concurrent.futures.Future.
    def abort(self) -> Any: ...


def load_engine_factory(spec: str) -> Callable[..., ExecutionEngine]:
    """Resolve `package.module:attr` into a callable engine factory."""
    raw = (spec or "").strip()
    module_name, sep, attr = raw.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"engine must look like 'package.module:factory', got {spec!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise TypeError(f"engine factory is not callable: {spec}")
    return target
