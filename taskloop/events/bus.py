"""
Event bus for the taskloop event channel.

Each orchestrator owns its own bus, so sessions running in one process never
see each other's events. Handlers may be invoked from agent worker threads.
"""

import logging
import threading
from typing import Callable, Optional

from taskloop.events.types import EventType, TaskloopEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[TaskloopEvent], None]
Unsubscribe = Callable[[], None]


class EventBus:
    """Lightweight event bus for routing loop events."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler,
    ) -> Unsubscribe:
        """
        Subscribe to a specific event type.

        Returns:
            A callable that removes this subscription. Calling it more than
            once is a no-op.
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Unsubscribe:
        """Subscribe to all events (for logging)."""
        with self._lock:
            self._global_handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._global_handlers:
                    self._global_handlers.remove(handler)

        return unsubscribe

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe from event type. Unknown handlers are ignored."""
        with self._lock:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def handler_count(self, event_type: Optional[EventType] = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
            return len(self._handlers.get(event_type, []))

    def emit(self, event: TaskloopEvent) -> None:
        """
        Emit an event to all subscribers.

        Handler exceptions are logged and do not reach the emitter or stop
        delivery to the remaining handlers.
        """
        with self._lock:
            handlers = list(self._global_handlers) + list(self._handlers.get(event.event_type, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # Handlers shouldn't break the bus
                logger.exception("Event handler failed for %s", event.event_type.value)

    def emit_agent_complete(
        self,
        task_title: Optional[str],
        iteration: int,
        exit_code: Optional[int],
        output: str,
        is_complete: bool,
        retry_count: int = 0,
        decomposition_request=None,
        task_id: Optional[str] = None,
        retry_contexts: Optional[list] = None,
    ) -> TaskloopEvent:
        """Convenience method to emit an agent completion."""
        event = TaskloopEvent(
            event_type=EventType.AGENT_COMPLETE,
            task_title=task_title,
            task_id=task_id,
            iteration=iteration,
            payload={
                "exit_code": exit_code,
                "output": output,
                "is_complete": is_complete,
                "retry_count": retry_count,
                "retry_contexts": retry_contexts or [],
                "decomposition_request": decomposition_request,
            },
        )
        self.emit(event)
        return event

    def emit_agent_error(
        self,
        task_title: Optional[str],
        iteration: int,
        error: str,
        exit_code: Optional[int],
        is_fatal: bool,
        error_type: str,
        output: str = "",
        retry_count: int = 0,
        task_id: Optional[str] = None,
        already_recorded: bool = False,
    ) -> TaskloopEvent:
        """
        Convenience method to emit an agent error.

        already_recorded marks an error whose failures were written to the
        failure history by the emitter.
        """
        event = TaskloopEvent(
            event_type=EventType.AGENT_ERROR,
            task_title=task_title,
            task_id=task_id,
            iteration=iteration,
            payload={
                "error": error,
                "exit_code": exit_code,
                "is_fatal": is_fatal,
                "error_type": error_type,
                "output": output,
                "retry_count": retry_count,
                "already_recorded": already_recorded,
            },
        )
        self.emit(event)
        return event
