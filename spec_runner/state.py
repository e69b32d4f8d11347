from __future__ import annotations

import enum
from dataclasses import dataclass, replace


class AutomationStatus(str, enum.Enum):
    MISSING = "missing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class RunState:
    """Process-wide run state, owned by the coordinator and handed to collaborators."""

    automation: AutomationStatus = AutomationStatus.MISSING
    unload: bool = False

    def set_automation_status(self, status: AutomationStatus) -> None:
        self.automation = AutomationStatus(status)

    def set_unload(self) -> None:
        self.unload = True

    def get(self) -> RunState:
        return replace(self)
