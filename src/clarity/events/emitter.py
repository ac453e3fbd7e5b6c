"""Where request events go.

The coordinator hands every ``RequestEvent`` to one ``EventEmitter`` and
never learns which sinks sit behind it. ``main`` wires a composite of
the log sink and the Prometheus sink (``metrics.py``).

Source:
- src/clarity/events/models.py (RequestEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from src.clarity.events.models import EventType, RequestEvent

logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """A sink for request events.

    ``emit`` is fire-and-forget from the coordinator's point of view, so
    implementations should not let sink failures escape.
    """

    @abstractmethod
    async def emit(self, event: RequestEvent) -> None:
        ...

    async def close(self) -> None:
        return None


_LEVEL_BY_EVENT: Dict[EventType, int] = {
    EventType.ERROR: logging.ERROR,
    EventType.RETRY: logging.WARNING,
}


class LoggingEventEmitter(EventEmitter):
    """Writes each event as one log record with its details as extra fields.

    Final errors log at ERROR, retries at WARNING, everything else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._log = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: RequestEvent) -> None:
        self._log.log(
            _LEVEL_BY_EVENT.get(event.event_type, logging.INFO),
            "%s event for request %s",
            event.event_type.value,
            event.request_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Forwards each event to every child sink in order.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the event.
    """

    def __init__(self, emitters: Optional[Iterable[EventEmitter]] = None):
        self._children: Tuple[EventEmitter, ...] = tuple(emitters or ())

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._children)

    async def emit(self, event: RequestEvent) -> None:
        for child in self._children:
            try:
                await child.emit(event)
            except Exception:
                logger.exception(
                    "Event sink failed",
                    extra={
                        "sink": type(child).__name__,
                        "event_type": event.event_type.value,
                        "request_id": event.request_id,
                    },
                )

    async def close(self) -> None:
        for child in self._children:
            try:
                await child.close()
            except Exception:
                logger.exception("Event sink failed to close", extra={"sink": type(child).__name__})


class NullEventEmitter(EventEmitter):
    """Drops every event; the coordinator's default when nothing is wired."""

    async def emit(self, event: RequestEvent) -> None:
        return None


def _metrics_sink(logger_name: Optional[str]) -> EventEmitter:
    # metrics.py imports this module
    from src.clarity.events.metrics import MetricsEventEmitter

    return MetricsEventEmitter()


_SINK_BUILDERS: Dict[EventSinkType, Callable[[Optional[str]], EventEmitter]] = {
    EventSinkType.LOGGING: lambda logger_name: LoggingEventEmitter(logger_name=logger_name),
    EventSinkType.METRICS: _metrics_sink,
}


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for a list of sinks.

    No sinks means logging only. A single sink is returned as is; several
    are wrapped in a ``CompositeEventEmitter`` in the order given.

    Example:
        >>> isinstance(create_event_emitter(), LoggingEventEmitter)
        True
    """
    sinks = [_SINK_BUILDERS[EventSinkType(sink)](logger_name) for sink in sink_types or ()]
    if not sinks:
        return LoggingEventEmitter(logger_name=logger_name)
    return sinks[0] if len(sinks) == 1 else CompositeEventEmitter(sinks)
