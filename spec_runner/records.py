"""Log and test record stores.

Both stores share one contract (`add`/`get`/`reset`) and differ only in how the
identifier is read from a record.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

from .events import Emitter

_LOGGER = logging.getLogger("spec_runner.records")

T = TypeVar("T")

STATE_CHANGED = "state:changed"


class LogRecord(Emitter):
    """A command log produced by the execution engine.

    Attributes live in a plain dict; `to_json()` returns a detached snapshot.
    `update()` mutates and notifies `state:changed` subscribers, `set()` does not.
    """

    def __init__(self, log_id: str, **attrs: Any) -> None:
        super().__init__()
        self.id = str(log_id)
        self._attrs: dict[str, Any] = {"id": self.id, **attrs}

    def get(self, key: str, default: Any = None) -> Any:
        return self._attrs.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._attrs[key] = value

    def update(self, **attrs: Any) -> None:
        self._attrs.update(attrs)
        self.emit(STATE_CHANGED, self)

    @property
    def row(self) -> int | None:
        row = self._attrs.get("row")
        return row if isinstance(row, int) else None

    def to_json(self) -> dict[str, Any]:
        # Snapshots are never serialized for the report layer.
        return {k: copy.deepcopy(v) for k, v in self._attrs.items() if k != "snapshots"}

    def __repr__(self) -> str:
        return f"LogRecord(id={self.id!r})"


class RecordStore(Generic[T]):
    def __init__(self, key: Callable[[T], Any]) -> None:
        self._key = key
        self._records: dict[str, T] = {}

    def add(self, record: T) -> T:
        key = self._key(record)
        if key is None:
            _LOGGER.warning("record without an id not stored: %r", record)
            return record
        self._records[str(key)] = record
        return record

    def get(self, record_id: Any) -> T | None:
        if record_id is None:
            return None
        return self._records.get(str(record_id))

    def reset(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return str(record_id) in self._records

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._records.values()))


def _test_id(test: Any) -> Any:
    if isinstance(test, dict):
        return test.get("id")
    return getattr(test, "id", None)


class LogStore(RecordStore[LogRecord]):
    def __init__(self) -> None:
        super().__init__(lambda log: log.id)


class TestStore(RecordStore[dict[str, Any]]):
    __test__ = False  # not a pytest class

    def __init__(self) -> None:
        super().__init__(_test_id)
