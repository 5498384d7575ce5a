"""Tests for handover event emitters and Prometheus metrics."""

import logging

from prometheus_client import CollectorRegistry

from handover_fakes import HandoverEnv, make_sale, make_transfer, run_async
from src.handover.events import (
    CompositeEventEmitter,
    EventSinkType,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    TransferEvent,
    TransferMetrics,
    create_event_emitter,
)
from src.handover.events.emitter import EventEmitter


def _sample(registry: CollectorRegistry, name: str, **labels) -> float:
    value = registry.get_sample_value(name, labels)
    return value or 0.0


def _event(event_type: EventType, **details) -> TransferEvent:
    return TransferEvent(
        event_type=event_type,
        sale_id="sale-1",
        repository="seller/widgets",
        details=details,
    )


class _FailingEmitter(EventEmitter):
    async def emit(self, event: TransferEvent) -> None:
        raise RuntimeError("sink offline")


class TestLoggingEventEmitter:

    def test_error_events_log_at_error(self, caplog):
        emitter = LoggingEventEmitter(logger_name="handover.test")

        with caplog.at_level(logging.DEBUG, logger="handover.test"):
            run_async(emitter.emit(_event(EventType.ERROR, operation="transfer_ownership")))

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.sale_id == "sale-1"
        assert record.operation == "transfer_ownership"

    def test_skips_log_at_debug(self, caplog):
        emitter = LoggingEventEmitter(logger_name="handover.test")

        with caplog.at_level(logging.DEBUG, logger="handover.test"):
            run_async(emitter.emit(_event(EventType.SKIPPED, reason="Max retries exceeded")))

        assert caplog.records[-1].levelno == logging.DEBUG


class TestCompositeEventEmitter:

    def test_failing_child_does_not_block_others(self):
        registry = CollectorRegistry()
        metrics_emitter = MetricsEventEmitter(registry=registry)
        composite = CompositeEventEmitter([_FailingEmitter(), metrics_emitter])

        run_async(composite.emit(_event(EventType.ESCROW_RELEASED, trigger="fallback")))

        assert _sample(registry, "handover_escrow_released_total", trigger="fallback") == 1.0

    def test_factory_builds_composite(self):
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        assert isinstance(emitter, CompositeEventEmitter)
        assert len(emitter.emitters) == 2

    def test_factory_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)


class TestMetricsEventEmitter:

    def test_transition_to_transfer_initiated_counts_success(self):
        registry = CollectorRegistry()
        emitter = MetricsEventEmitter(registry=registry)

        run_async(
            emitter.emit(
                _event(
                    EventType.STATE_TRANSITION,
                    from_status="invitation_sent",
                    to_status="transfer_initiated",
                )
            )
        )

        assert _sample(registry, "handover_transfer_attempts_total", result="success") == 1.0
        assert _sample(registry, "handover_transfers_by_status", status="transfer_initiated") == 1.0
        assert _sample(registry, "handover_transfers_by_status", status="invitation_sent") == 0.0

    def test_ownership_error_counts_failure(self):
        registry = CollectorRegistry()
        emitter = MetricsEventEmitter(registry=registry)

        run_async(
            emitter.emit(
                _event(EventType.ERROR, operation="transfer_ownership", error_kind="forbidden")
            )
        )

        assert _sample(registry, "handover_transfer_attempts_total", result="failure") == 1.0
        assert (
            _sample(
                registry,
                "handover_transfer_errors_total",
                operation="transfer_ownership",
                kind="forbidden",
            )
            == 1.0
        )

    def test_grant_error_is_not_an_attempt(self):
        registry = CollectorRegistry()
        emitter = MetricsEventEmitter(registry=registry)

        run_async(
            emitter.emit(_event(EventType.ERROR, operation="grant_collaborator", error_kind="not_found"))
        )

        assert _sample(registry, "handover_transfer_attempts_total", result="failure") == 0.0

    def test_engine_run_updates_metrics(self):
        registry = CollectorRegistry()
        env = HandoverEnv()
        env.engine.event_emitter = MetricsEventEmitter(metrics=TransferMetrics(registry=registry))
        env.sales.add(make_sale())
        env.transfers.add(make_transfer())

        async def _inner():
            await env.engine.transfer_ownership("sale-1")
            await env.engine.transfer_ownership("sale-1")
            await env.engine.wait_for_notifications()

        run_async(_inner())

        assert _sample(registry, "handover_transfer_attempts_total", result="success") == 1.0
        assert _sample(registry, "handover_escrow_released_total", trigger="transfer") == 1.0
        assert (
            _sample(
                registry,
                "handover_transfer_skips_total",
                reason="Escrow already released, refunded or disputed",
            )
            == 1.0
        )
