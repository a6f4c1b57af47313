"""
Event types for the taskloop event channel.

Defines TaskloopEvent and the EventType enum for notifications raised by the
agent runner and the iteration loop.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid


class EventType(Enum):
    """All event types in the loop."""

    # Agent lifecycle
    AGENT_START = "agent.start"
    AGENT_COMPLETE = "agent.complete"
    AGENT_ERROR = "agent.error"
    AGENT_RETRY = "agent.retry"

    # Iteration lifecycle
    ITERATION_START = "iteration.start"
    ITERATION_COMPLETE = "iteration.complete"

    # Session lifecycle
    SESSION_COMPLETE = "session.complete"


@dataclass
class TaskloopEvent:
    """
    A single event on the channel.

    Payload keys by type:
        agent.complete: exit_code, output, is_complete, retry_count,
            retry_contexts, decomposition_request (DecompositionRequest or None)
        agent.error: error, exit_code, is_fatal, error_type, output, retry_count
        agent.retry: attempt, delay_ms, category
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    event_type: EventType = EventType.AGENT_ERROR
    task_title: Optional[str] = None
    task_id: Optional[str] = None
    iteration: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskloopEvent":
        """Create from dict."""
        data = data.copy()  # Don't mutate input
        data["event_type"] = EventType(data["event_type"])
        return cls(**data)

    def __str__(self) -> str:
        return f"[{self.timestamp}] {self.event_type.value} task={self.task_title}"
