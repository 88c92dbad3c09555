"""Prometheus metrics for session observability.

Metrics Defined:
- dispatch_sessions_finished_total: Counter of runs by terminal outcome
- dispatch_session_errors_total: Counter of errors and timeouts by stage
- dispatch_run_duration_seconds: Histogram of successful run durations
- dispatch_sessions_by_stage: Gauge of in-flight runs per active stage

MetricsEventEmitter updates these from SessionEvents. The text exposition
for `/metrics` comes from generate_metrics_output().
"""

import logging
from typing import Callable, Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.dispatch.events.emitter import EventEmitter
from src.dispatch.events.models import EventType, SessionEvent


logger = logging.getLogger(__name__)


# 1 second to 1 hour; agent runs are long
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
)


# Stages a run occupies while in flight; matches SessionStage values
ACTIVE_STAGES = (
    "acknowledged",
    "provisioning",
    "executing",
)

TERMINAL_STAGES = (
    "completed",
    "failed",
    "stopped",
)


class SessionMetrics:
    """Container for all session Prometheus metrics.

    Metrics:
        sessions_finished_total: Runs that reached a terminal stage.
            Labels: outcome (completed/failed/stopped)

        session_errors_total: Errors and timeouts.
            Labels: stage (where the error occurred)

        run_duration_seconds: Duration of successful runs.

        sessions_by_stage: Runs currently in each active stage.
            Labels: stage

    Example:
        >>> metrics = SessionMetrics(registry=CollectorRegistry())
        >>> metrics.record_session_finished("completed")
        >>> metrics.record_run_duration(45.5)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize session metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.sessions_finished_total = Counter(
            "dispatch_sessions_finished_total",
            "Total number of session runs that reached a terminal stage",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.session_errors_total = Counter(
            "dispatch_session_errors_total",
            "Total number of session run errors and timeouts",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "dispatch_run_duration_seconds",
            "Duration of successful session runs in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.sessions_by_stage = Gauge(
            "dispatch_sessions_by_stage",
            "Current number of session runs in each active stage",
            labelnames=["stage"],
            registry=self.registry,
        )

        for stage in ACTIVE_STAGES:
            self.sessions_by_stage.labels(stage=stage).set(0)

    def record_session_finished(self, outcome: str) -> None:
        self.sessions_finished_total.labels(outcome=outcome).inc()

    def record_session_error(self, stage: str) -> None:
        self.session_errors_total.labels(stage=stage).inc()

    def record_run_duration(self, duration_seconds: float) -> None:
        self.run_duration_seconds.observe(duration_seconds)

    def update_stage_count(self, stage: str, delta: int) -> None:
        """Move the in-flight count of an active stage by delta.

        Stages outside ACTIVE_STAGES are ignored.
        """
        if stage not in ACTIVE_STAGES:
            return
        gauge = self.sessions_by_stage.labels(stage=stage)
        if delta >= 0:
            gauge.inc(delta)
        else:
            gauge.dec(-delta)


_default_metrics: Optional[SessionMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> SessionMetrics:
    """Get the metrics for the default registry, or new ones for a custom one.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  process-wide instance bound to the default REGISTRY.
    """
    global _default_metrics

    if registry is not None:
        return SessionMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = SessionMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in the Prometheus text format for `/metrics`."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: moves the stage gauge; a terminal target stage
      counts a finished session with that outcome
    - ERROR: increments session_errors_total for the stage
    - COMPLETION: observes the run duration
    - TIMEOUT: increments session_errors_total with stage "timeout"

    A metrics update that fails is logged; emit() never raises.
    """

    def __init__(
        self,
        metrics: Optional[SessionMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        """Initialize the emitter.

        Args:
            metrics: SessionMetrics to update; defaults to get_metrics(registry).
            registry: Prometheus registry, used only when metrics is None.
        """
        self.metrics = metrics if metrics is not None else get_metrics(registry)
        self._handlers: Dict[EventType, Callable[[SessionEvent], None]] = {
            EventType.STATE_TRANSITION: self._on_transition,
            EventType.ERROR: self._on_error,
            EventType.COMPLETION: self._on_completion,
            EventType.TIMEOUT: self._on_timeout,
        }

    async def emit(self, event: SessionEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Failed to update metrics for %s event",
                event.event_type.value,
                extra={"session_id": event.session_id},
            )

    def _on_transition(self, event: SessionEvent) -> None:
        from_stage = event.details.get("from_stage")
        to_stage = event.details.get("to_stage")
        if from_stage:
            self.metrics.update_stage_count(from_stage, -1)
        if to_stage:
            self.metrics.update_stage_count(to_stage, 1)
        if to_stage in TERMINAL_STAGES:
            self.metrics.record_session_finished(to_stage)

    def _on_error(self, event: SessionEvent) -> None:
        self.metrics.record_session_error(event.details.get("stage", "unknown"))

    def _on_completion(self, event: SessionEvent) -> None:
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self.metrics.record_run_duration(float(duration))

    def _on_timeout(self, event: SessionEvent) -> None:
        self.metrics.record_session_error("timeout")
