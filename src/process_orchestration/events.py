"""Process lifecycle events and a small synchronous publish/subscribe channel.

The external process orchestrator publishes ``process:*`` events; the
compensation service and sub-process manager publish their own lifecycle events
through the same :class:`EventEmitter` type.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ProcessEventType(str, Enum):
    STARTED = "process:started"
    COMPLETED = "process:completed"
    FAILED = "process:failed"
    CANCELLED = "process:cancelled"


class CompensationEventType(str, Enum):
    STARTED = "compensation:started"
    TASK_COMPLETED = "compensation:task:completed"
    TASK_FAILED = "compensation:task:failed"
    COMPLETED = "compensation:completed"
    FAILED = "compensation:failed"
    TRANSACTION_COMMITTED = "transaction:committed"
    TRANSACTION_ROLLED_BACK = "transaction:rolledback"


class SubProcessEventType(str, Enum):
    STARTED = "subprocess:started"
    COMPLETED = "subprocess:completed"
    FAILED = "subprocess:failed"


@dataclass(frozen=True, slots=True)
class ProcessEvent:
    """A lifecycle signal about a process instance.

    ``payload`` carries event specific data, e.g. ``{"error": exc}`` for
    ``process:failed``.
    """

    type: str
    instance_id: str | None = None
    payload: dict[str, object] = field(default_factory=dict)

    @property
    def error(self) -> object | None:
        return self.payload.get("error")


Listener = Callable[[ProcessEvent], None]


def _key(event_type: str) -> str:
    # str-enum members and their plain string values must share one slot.
    return event_type.value if isinstance(event_type, Enum) else event_type


class EventEmitter:
    """Synchronous in-process event dispatch.

    Listeners run in registration order on the emitting thread. A listener
    registered twice is called twice; ``off`` removes one registration.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(_key(event_type), []).append(listener)

    def off(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(_key(event_type))
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[_key(event_type)]

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(_key(event_type), ()))

    def emit(self, event: ProcessEvent) -> None:
        # Snapshot so listeners may unsubscribe themselves while being called.
        listeners = list(self._listeners.get(_key(event.type), ()))
        logger.debug(
            "Dispatching event",
            extra={
                "event_type": _key(event.type),
                "instance_id": event.instance_id,
                "listeners": len(listeners),
            },
        )
        for listener in listeners:
            listener(event)
