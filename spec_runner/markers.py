from __future__ import annotations

from typing import Any, Protocol

UNLOAD_MARKER = "unload"


class RunMarkers(Protocol):
    """Run-scoped persisted markers (browser cookies in the page deployment)."""

    def clear_all(self) -> None: ...

    def set_unload(self) -> None: ...


class InMemoryRunMarkers:
    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.clear_count = 0

    def set(self, name: str, value: Any) -> None:
        self.values[name] = value

    def clear_all(self) -> None:
        self.values.clear()
        self.clear_count += 1

    def set_unload(self) -> None:
        self.values[UNLOAD_MARKER] = True
