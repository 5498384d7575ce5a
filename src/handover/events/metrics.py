"""Prometheus metrics for handover observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- handover_transfer_attempts_total: Ownership attempts by result
- handover_transfer_skips_total: Skipped ownership attempts by reason
- handover_transfer_errors_total: Failures by operation and error kind
- handover_escrow_released_total: Escrow releases by trigger
- handover_transfers_by_status: Gauge of transfer records per status

The MetricsEventEmitter updates these metrics from engine events.

Source:
- src/handover/events/models.py (TransferEvent, EventType)
- src/handover/transfers/models.py (TransferStatus)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from src.handover.events.emitter import EventEmitter
from src.handover.events.models import EventType, TransferEvent
from src.handover.transfers.models import TransferStatus


logger = logging.getLogger(__name__)


TRANSFER_STATUSES = tuple(status.value for status in TransferStatus)


class TransferMetrics:
    """Container for all handover Prometheus metrics.

    Supports custom registries for testing.

    Example:
        >>> metrics = TransferMetrics(registry=CollectorRegistry())
        >>> metrics.record_attempt(success=True)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize handover metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.transfer_attempts_total = Counter(
            "handover_transfer_attempts_total",
            "Ownership transfer attempts that reached GitHub",
            labelnames=["result"],
            registry=self.registry,
        )

        self.transfer_skips_total = Counter(
            "handover_transfer_skips_total",
            "Ownership transfer attempts that were skipped",
            labelnames=["reason"],
            registry=self.registry,
        )

        self.transfer_errors_total = Counter(
            "handover_transfer_errors_total",
            "Failed grant and ownership operations",
            labelnames=["operation", "kind"],
            registry=self.registry,
        )

        self.escrow_released_total = Counter(
            "handover_escrow_released_total",
            "Escrow releases performed by the handover engine",
            labelnames=["trigger"],
            registry=self.registry,
        )

        self.transfers_by_status = Gauge(
            "handover_transfers_by_status",
            "Transfer records observed in each status by this process",
            labelnames=["status"],
            registry=self.registry,
        )

        for status in TRANSFER_STATUSES:
            self.transfers_by_status.labels(status=status).set(0)

    def record_attempt(self, success: bool) -> None:
        result = "success" if success else "failure"
        self.transfer_attempts_total.labels(result=result).inc()

    def record_skip(self, reason: str) -> None:
        self.transfer_skips_total.labels(reason=reason).inc()

    def record_error(self, operation: str, kind: str) -> None:
        self.transfer_errors_total.labels(operation=operation, kind=kind).inc()

    def record_escrow_released(self, trigger: str) -> None:
        self.escrow_released_total.labels(trigger=trigger).inc()

    def update_status_count(self, status: str, delta: int) -> None:
        """Adjust the per-status gauge, never going below zero.

        Args:
            status: Transfer status value.
            delta: +1 for entering a status, -1 for leaving it.
        """
        if status in TRANSFER_STATUSES:
            gauge = self.transfers_by_status.labels(status=status)
            gauge.set(max(0, gauge._value.get() + delta))


_default_metrics: Optional[TransferMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> TransferMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return TransferMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = TransferMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: Updates the status gauge; a move to
      transfer_initiated counts as a successful attempt
    - ERROR: Counts the error; ownership errors count as failed attempts
    - ESCROW_RELEASED: Counts the release by trigger
    - SKIPPED: Counts the skip by reason
    """

    def __init__(
        self,
        metrics: Optional[TransferMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> TransferMetrics:
        return self._metrics

    async def emit(self, event: TransferEvent) -> None:
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                self._handle_state_transition(event)
            elif event.event_type == EventType.ERROR:
                self._handle_error(event)
            elif event.event_type == EventType.ESCROW_RELEASED:
                self._metrics.record_escrow_released(
                    event.details.get("trigger", "unknown")
                )
            elif event.event_type == EventType.SKIPPED:
                self._metrics.record_skip(event.details.get("reason", "unknown"))
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "sale_id": event.sale_id},
            )

    def _handle_state_transition(self, event: TransferEvent) -> None:
        from_status = event.details.get("from_status")
        to_status = event.details.get("to_status")

        if from_status:
            self._metrics.update_status_count(from_status, -1)
        if to_status:
            self._metrics.update_status_count(to_status, +1)

        if to_status == TransferStatus.TRANSFER_INITIATED.value:
            self._metrics.record_attempt(success=True)

    def _handle_error(self, event: TransferEvent) -> None:
        operation = event.details.get("operation", "unknown")
        self._metrics.record_error(
            operation=operation,
            kind=event.details.get("error_kind", "unknown"),
        )
        if operation == "transfer_ownership":
            self._metrics.record_attempt(success=False)
