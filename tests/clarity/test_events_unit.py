"""Unit tests for request events, emitters and Prometheus metrics."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from src.clarity.events.emitter import (
    CompositeEventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.clarity.events.metrics import (
    MetricsEventEmitter,
    PipelineMetrics,
    generate_metrics_output,
)
from src.clarity.events.models import EventType, RequestEvent


def run_async(coro):
    return asyncio.run(coro)


def _make_event(event_type: EventType = EventType.STATE_TRANSITION, **details) -> RequestEvent:
    return RequestEvent(
        event_type=event_type,
        request_id="fr-1",
        repository="acme/widgets",
        details=details,
    )


def _make_metrics_emitter():
    registry = CollectorRegistry()
    return MetricsEventEmitter(metrics=PipelineMetrics(registry=registry)), registry


class TestRequestEvent:
    def test_log_dict_flattens_details(self):
        event = _make_event(EventType.RETRY, attempt=2, error_message="timeout")
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "retry"
        assert log_dict["attempt"] == 2
        assert log_dict["repository"] == "acme/widgets"

    def test_request_id_required(self):
        with pytest.raises(ValueError):
            RequestEvent(event_type=EventType.ERROR, request_id="")


class TestEmitters:
    def test_logging_levels(self, caplog):
        emitter = LoggingEventEmitter(logger_name="clarity.test.events")
        with caplog.at_level(logging.INFO, logger="clarity.test.events"):
            run_async(emitter.emit(_make_event(EventType.ERROR, error_code="GIT_ERROR")))
            run_async(emitter.emit(_make_event(EventType.RETRY)))
            run_async(emitter.emit(_make_event(EventType.COMPLETION)))

        records = [r for r in caplog.records if r.name == "clarity.test.events"]
        assert [r.levelno for r in records] == [logging.ERROR, logging.WARNING, logging.INFO]
        assert records[0].error_code == "GIT_ERROR"

    def test_composite_isolates_failures(self):
        broken = MagicMock()
        broken.emit = AsyncMock(side_effect=RuntimeError("sink down"))
        healthy = MagicMock()
        healthy.emit = AsyncMock()
        event = _make_event()

        run_async(CompositeEventEmitter([broken, healthy]).emit(event))

        healthy.emit.assert_awaited_once_with(event)

    def test_factory(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)
        assert isinstance(create_event_emitter([EventSinkType.LOGGING]), LoggingEventEmitter)
        composite = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        assert isinstance(composite, CompositeEventEmitter)
        assert isinstance(composite.emitters[1], MetricsEventEmitter)

    def test_null_emitter(self):
        assert run_async(NullEventEmitter().emit(_make_event())) is None


class TestMetrics:
    def test_state_transitions_move_status_gauge(self):
        emitter, registry = _make_metrics_emitter()

        run_async(emitter.emit(_make_event(to_status="issue_created")))
        run_async(emitter.emit(_make_event(from_status="issue_created", to_status="processing")))

        def gauge(status):
            return registry.get_sample_value("clarity_requests_by_status", {"status": status})

        assert gauge("issue_created") == 0
        assert gauge("processing") == 1

    def test_gauge_never_negative(self):
        emitter, registry = _make_metrics_emitter()
        run_async(emitter.emit(_make_event(from_status="processing")))
        assert registry.get_sample_value("clarity_requests_by_status", {"status": "processing"}) == 0

    def test_error_and_completion_counters(self):
        emitter, registry = _make_metrics_emitter()

        run_async(emitter.emit(_make_event(EventType.ERROR, category="GIT")))
        run_async(emitter.emit(_make_event(EventType.COMPLETION, outcome="pr_created", duration_seconds=42.0)))
        run_async(emitter.emit(_make_event(EventType.CLARIFICATION, question_count=2)))
        run_async(emitter.emit(_make_event(EventType.RETRY, attempt=1)))

        def processed(result):
            return registry.get_sample_value("clarity_requests_processed_total", {"result": result})

        assert registry.get_sample_value("clarity_requests_failed_total", {"category": "GIT"}) == 1
        assert processed("error") == 1
        assert processed("pr_created") == 1
        assert processed("needs_clarification") == 1
        assert registry.get_sample_value("clarity_request_retries_total") == 1
        assert registry.get_sample_value("clarity_agent_turn_duration_seconds_count") == 1

    def test_output_is_prometheus_text(self):
        emitter, registry = _make_metrics_emitter()
        run_async(emitter.emit(_make_event(EventType.RETRY)))
        output = generate_metrics_output(registry)
        assert b"clarity_request_retries_total 1.0" in output
