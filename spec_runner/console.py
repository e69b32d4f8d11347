"""Error-reporting collaborator for console requests coming over the control channel."""

from __future__ import annotations

import json
import logging
import time
import traceback
from collections import deque
from typing import Any

from .records import LogRecord

_LOGGER = logging.getLogger("spec_runner.console")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _str(x: Any, *, max_len: int = 2000) -> str:
    try:
        s = str(x)
    except Exception:
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"


def format_error(err: Any) -> str:
    """Render an error with its traceback when one is attached."""
    if isinstance(err, BaseException):
        return "".join(traceback.format_exception(type(err), err, err.__traceback__)).rstrip()
    stack = getattr(err, "stack", None)
    if isinstance(stack, str) and stack:
        return stack
    return _str(err)


class RunConsole:
    """Renders log/error details on request and keeps a small buffer of what it rendered."""

    def __init__(self, *, max_entries: int = 200) -> None:
        self._entries: deque[dict[str, Any]] = deque(maxlen=max(1, int(max_entries)))

    def clear_log(self) -> None:
        self._entries.clear()

    def log_error(self, *parts: Any) -> None:
        message = " ".join(_str(p) for p in parts)
        self._entries.append({"level": "error", "message": message, "ts": _now_ms()})
        _LOGGER.error("%s", message)

    def log_formatted(self, log: LogRecord) -> None:
        data = log.to_json()
        name = data.get("name") or "log"
        message = data.get("message")
        lines = [f"Command: {name}"]
        if message not in (None, ""):
            lines.append(f"Message: {_str(message, max_len=500)}")
        console_props = data.get("consoleProps")
        if isinstance(console_props, dict):
            for key, value in console_props.items():
                try:
                    rendered = json.dumps(value, ensure_ascii=False, default=str)
                except Exception:
                    rendered = _str(value)
                lines.append(f"{key}: {_str(rendered, max_len=500)}")
        text = "\n".join(lines)
        self._entries.append({"level": "info", "message": text, "logId": log.id, "ts": _now_ms()})
        _LOGGER.info("%s", text)

    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)
