"""Event emitter implementations for handover observability.

This module defines an abstract EventEmitter interface and concrete
implementations for different event sinks:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

Source:
- src/handover/events/models.py (TransferEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.handover.events.models import EventType, TransferEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the engine.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for handover event emitters.

    Implementations should be:
    - Async-safe: emit() is called from async contexts
    - Fault-tolerant: emit() failures should not crash the engine
    """

    @abstractmethod
    async def emit(self, event: TransferEvent) -> None:
        """Emit a handover event.

        Args:
            event: The event to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Events are logged at different levels based on event type:

    - STATE_TRANSITION: INFO level
    - ESCROW_RELEASED: INFO level
    - SKIPPED: DEBUG level
    - ERROR: ERROR level

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(event)
        # Logs: INFO - Handover event: state_transition for sale-1
    """

    def __init__(self, logger_name: Optional[str] = None):
        """Initialize the logging event emitter.

        Args:
            logger_name: Optional logger name. If not provided, uses
                         the module logger.
        """
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.STATE_TRANSITION: logging.INFO,
            EventType.ESCROW_RELEASED: logging.INFO,
            EventType.SKIPPED: logging.DEBUG,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: TransferEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Handover event: %s for %s",
            event.event_type.value,
            event.sale_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Failures in one emitter do not affect others; each emitter is called
    independently and errors are logged but not propagated.

    Example:
        >>> composite = CompositeEventEmitter(
        ...     [LoggingEventEmitter(), MetricsEventEmitter()]
        ... )
        >>> await composite.emit(event)  # Emits to both sinks
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Get a copy of the child emitters."""
        return list(self._emitters)

    async def emit(self, event: TransferEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "sale_id": event.sale_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: TransferEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an event emitter for the requested sinks.

    Args:
        sink_types: Sinks to enable. If None or empty, returns a
                    LoggingEventEmitter.
        logger_name: Optional logger name for the LoggingEventEmitter.

    Returns:
        A single emitter, or a CompositeEventEmitter for several sinks.

    Example:
        >>> emitter = create_event_emitter(
        ...     [EventSinkType.LOGGING, EventSinkType.METRICS]
        ... )
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # Imported here because metrics.py imports this module
            from src.handover.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
