"""EventBus for decoupled publish/subscribe communication."""

import logging
from enum import Enum, auto
from typing import Any, Callable
from collections import defaultdict

logger = logging.getLogger(__name__)


class EventType(Enum):
    # Optimization lifecycle
    OPTIMIZATION_STARTED = auto()    # data: viseme (str), config (OptimizationConfig)
    OPTIMIZATION_PROGRESS = auto()   # data: progress (ProgressUpdate)
    OPTIMIZATION_COMPLETE = auto()   # data: completion (CompletionUpdate)
    OPTIMIZATION_FAILED = auto()     # data: viseme (str), error (Exception)

    # Learning state
    LEARNING_IMPORTED = auto()       # data: visemes (list[str])
    LEARNING_RESET = auto()


class EventBus:
    """Simple publish/subscribe event system.

    A handler that raises is logged and skipped; the remaining handlers
    still run and the publisher never sees the exception.
    """

    def __init__(self):
        self._handlers: dict[EventType, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Callable) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Callable) -> None:
        handlers = self._handlers[event_type]
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: EventType, **data: Any) -> None:
        for handler in list(self._handlers[event_type]):
            try:
                handler(**data)
            except Exception:
                logger.warning("Handler %r failed for %s", handler, event_type.name,
                               exc_info=True)

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers[event_type])

    def clear(self) -> None:
        self._handlers.clear()
