"""Event emitters for the cutover engine."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from cutover_engine.core.events_model import DeploymentEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "deployment.started",
    "deployment.transitioned",
    "deployment.finished",
    "deployment.rejected",
    "lock.lost",
    "resource.force_released",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Logs events and keeps them in memory for inspection."""

    def __init__(self):
        self.events = []

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            if not event.resource_id:
                raise ValueError("Event must have resource_id")

            self.events.append(event)

            logger.info(
                f"[EVENT] {event.event_type} | resource={event.resource_id} "
                f"deployment={event.deployment_id} {event.metadata}"
            )

    def of_type(self, event_type: str):
        return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter:
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[DeploymentEvent]):
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        pass
