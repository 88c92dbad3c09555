"""Event emitter implementations for session observability.

This module defines the EventEmitter interface and the emitters that do not
depend on Prometheus:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

MetricsEventEmitter lives in metrics.py.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.dispatch.events.models import EventType, SessionEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for session event emitters.

    Implementations are called from the event loop and must not block it.
    Callers treat emission as best-effort and log failures.
    """

    @abstractmethod
    async def emit(self, event: SessionEvent) -> None:
        """Emit a session event.

        Args:
            event: The session event to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources.

        The default implementation does nothing.
        """
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Log levels by event type:

    - STATE_TRANSITION: INFO
    - COMPLETION: INFO
    - ERROR: ERROR
    - TIMEOUT: WARNING

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(event)
        # Logs: INFO - Session event: state_transition for session-1
    """

    def __init__(self, logger_name: Optional[str] = None):
        """Initialize the logging event emitter.

        Args:
            logger_name: Optional logger name. If not provided, uses
                         the module logger.
        """
        self._logger = (
            logging.getLogger(logger_name)
            if logger_name
            else logger
        )
        self._log_level_map = {
            EventType.STATE_TRANSITION: logging.INFO,
            EventType.COMPLETION: logging.INFO,
            EventType.ERROR: logging.ERROR,
            EventType.TIMEOUT: logging.WARNING,
        }

    async def emit(self, event: SessionEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)

        self._logger.log(
            log_level,
            "Session event: %s for %s",
            event.event_type.value,
            event.session_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans each event out to several child emitters.

    Children are called in order. A child that raises is logged and skipped,
    so one broken sink never hides an event from the rest.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Child emitters, as a copy."""
        return list(self._emitters)

    async def emit(self, event: SessionEvent) -> None:
        for child in self._emitters:
            try:
                await child.emit(event)
            except Exception:
                logger.exception(
                    "Event emitter %s failed",
                    type(child).__name__,
                    extra={
                        "event_type": event.event_type.value,
                        "session_id": event.session_id,
                    },
                )

    async def close(self) -> None:
        for child in self._emitters:
            try:
                await child.close()
            except Exception:
                logger.exception("Event emitter %s failed to close", type(child).__name__)


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: SessionEvent) -> None:
        pass


def _build_emitter(
    sink_type: EventSinkType, logger_name: Optional[str]
) -> Optional[EventEmitter]:
    if sink_type == EventSinkType.LOGGING:
        return LoggingEventEmitter(logger_name=logger_name)
    if sink_type == EventSinkType.METRICS:
        # metrics.py imports this module
        from src.dispatch.events.metrics import MetricsEventEmitter

        return MetricsEventEmitter()
    logger.warning("Unknown event sink type %s, skipping", sink_type)
    return None


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create the emitter for a set of sinks.

    No sinks, or none that are recognized, means logging only. More than one
    sink yields a CompositeEventEmitter.

    Example:
        >>> emitter = create_event_emitter([
        ...     EventSinkType.LOGGING,
        ...     EventSinkType.METRICS,
        ... ])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    built = [_build_emitter(sink_type, logger_name) for sink_type in sink_types or []]
    emitters = [emitter for emitter in built if emitter is not None]

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
