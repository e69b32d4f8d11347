from __future__ import annotations

from collections.abc import Iterable


class RunnerError(Exception):
    """Base error for the run lifecycle."""


class ChannelError(RunnerError):
    """The control channel could not deliver a frame."""


class RestartTimeoutError(RunnerError):
    def __init__(self, pending: Iterable[str], timeout: float | None) -> None:
        self.pending = tuple(pending)
        self.timeout = timeout
        names = ", ".join(self.pending) or "-"
        super().__init__(f"Restart join timed out after {timeout}s; still pending: {names}")
