from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    PLANNING_STARTED = "planning_started"
    PLANNING_COMPLETE = "planning_complete"
    ROUND_STARTED = "round_started"
    ROUND_COMPLETE = "round_complete"
    API_STARTED = "api_started"
    API_COMPLETED = "api_completed"
    SOURCE_FOUND = "source_found"
    REFLECTION_STARTED = "reflection_started"
    REFLECTION_COMPLETE = "reflection_complete"
    DECISION_MADE = "decision_made"
    SOURCE_SELECTION_STARTED = "source_selection_started"
    SELECTION_COMPLETE = "selection_complete"
    SESSION_COMPLETE = "session_complete"


@dataclass
class ProgressEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event.value, **self.data}
