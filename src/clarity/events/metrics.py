"""Prometheus metrics for the request pipeline.

Metrics:
- clarity_requests_processed_total{result}: turns that reached an outcome
- clarity_requests_failed_total{category}: turns failed on their final attempt
- clarity_request_retries_total: turns handed back to the queue
- clarity_agent_turn_duration_seconds: agent turn wall-clock time
- clarity_requests_by_status{status}: requests currently in each status

Exposed in Prometheus text format at ``/metrics``.

Source:
- src/clarity/events/models.py (RequestEvent, EventType)
- src/clarity/state/models.py (RequestStatus)
"""

import logging
from typing import Any, Callable, Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.clarity.events.emitter import EventEmitter
from src.clarity.events.models import EventType, RequestEvent
from src.clarity.state.models import RequestStatus

logger = logging.getLogger(__name__)

# agent turns run from seconds to hours
TURN_DURATION_BUCKETS = (10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0, 3600.0, 7200.0)

REQUEST_STATUSES = tuple(status.value for status in RequestStatus)


class PipelineMetrics:
    """Container for the pipeline's Prometheus metrics.

    Args:
        registry: Registry to register with. Tests pass a fresh
            CollectorRegistry to avoid duplicate registration.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.requests_processed_total = Counter(
            "clarity_requests_processed_total",
            "Agent turns that reached an outcome",
            labelnames=["result"],
            registry=self.registry,
        )
        self.requests_failed_total = Counter(
            "clarity_requests_failed_total",
            "Agent turns that failed on their final attempt",
            labelnames=["category"],
            registry=self.registry,
        )
        self.retries_total = Counter(
            "clarity_request_retries_total",
            "Agent turns returned to the queue for another attempt",
            registry=self.registry,
        )
        self.agent_turn_duration_seconds = Histogram(
            "clarity_agent_turn_duration_seconds",
            "Wall-clock duration of agent turns in seconds",
            buckets=TURN_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.requests_by_status = Gauge(
            "clarity_requests_by_status",
            "Requests currently in each status",
            labelnames=["status"],
            registry=self.registry,
        )
        self._status_counts = {status: 0 for status in REQUEST_STATUSES}
        for status in REQUEST_STATUSES:
            self.requests_by_status.labels(status=status).set(0)

    def record_processed(self, result: str) -> None:
        self.requests_processed_total.labels(result=result).inc()

    def record_failed(self, category: str) -> None:
        self.requests_failed_total.labels(category=category).inc()

    def record_retry(self) -> None:
        self.retries_total.inc()

    def record_turn_duration(self, duration_seconds: float) -> None:
        self.agent_turn_duration_seconds.observe(duration_seconds)

    def update_status_count(self, status: str, delta: int) -> None:
        if status not in self._status_counts:
            return
        count = max(0, self._status_counts[status] + delta)
        self._status_counts[status] = count
        self.requests_by_status.labels(status=status).set(count)


_process_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Return the process-wide metrics, or a new set for a custom registry."""
    global _process_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)
    if _process_metrics is None:
        _process_metrics = PipelineMetrics()
    return _process_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Translates request events into metric updates."""

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)
        self._handlers: Dict[EventType, Callable[[Dict[str, Any]], None]] = {
            EventType.STATE_TRANSITION: self._on_transition,
            EventType.COMPLETION: self._on_completion,
            EventType.CLARIFICATION: lambda details: self._metrics.record_processed("needs_clarification"),
            EventType.RETRY: lambda details: self._metrics.record_retry(),
            EventType.ERROR: self._on_error,
        }

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    def _on_transition(self, details: Dict[str, Any]) -> None:
        if details.get("from_status"):
            self._metrics.update_status_count(details["from_status"], -1)
        if details.get("to_status"):
            self._metrics.update_status_count(details["to_status"], 1)

    def _on_completion(self, details: Dict[str, Any]) -> None:
        self._metrics.record_processed(details.get("outcome", "completed"))
        if details.get("duration_seconds") is not None:
            self._metrics.record_turn_duration(float(details["duration_seconds"]))

    def _on_error(self, details: Dict[str, Any]) -> None:
        self._metrics.record_failed(details.get("category") or "unknown")
        self._metrics.record_processed("error")

    async def emit(self, event: RequestEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return
        try:
            handler(event.details)
        except (TypeError, ValueError):
            logger.exception(
                "Metrics update skipped for malformed event",
                extra={"event_type": event.event_type.value, "request_id": event.request_id},
            )
