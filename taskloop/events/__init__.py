"""
Event channel for the taskloop iteration loop.

The agent runner publishes completion and error notifications; the handler
coordinator subscribes to them and decides how the loop proceeds.
"""

from taskloop.events.types import EventType, TaskloopEvent
from taskloop.events.bus import EventBus

__all__ = [
    "EventType",
    "TaskloopEvent",
    "EventBus",
]
