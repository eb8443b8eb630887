"""
Prometheus metrics for the enrolment registry

Counts commands and transitions, times calls to the quality and
identification services, and tracks issuance and audit delivery.
"""
import os
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
)

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# WORKFLOW METRICS
# =======================

commands_total = Counter(
    name="enrolment_commands_total",
    documentation="Commands handled by the registration state machine",
    labelnames=["command", "outcome"],  # outcome: ok or an error kind
    registry=REGISTRY,
)

transitions_total = Counter(
    name="enrolment_transitions_total",
    documentation="Committed status transitions",
    labelnames=["from_status", "to_status"],
    registry=REGISTRY,
)

command_duration_seconds = Histogram(
    name="enrolment_command_duration_seconds",
    documentation="Time spent handling a command in seconds",
    labelnames=["command"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

# =======================
# BIOMETRIC METRICS
# =======================

quality_rejections_total = Counter(
    name="enrolment_quality_rejections_total",
    documentation="Samples rejected by the quality gate",
    labelnames=["modality"],
    registry=REGISTRY,
)

capture_outcomes_total = Counter(
    name="enrolment_capture_outcomes_total",
    documentation="Capture attempts by outcome",
    labelnames=["outcome"],  # quality_check_failed, partial, unique, duplicate_found
    registry=REGISTRY,
)

# =======================
# EXTERNAL SERVICE METRICS
# =======================

external_call_duration_seconds = Histogram(
    name="enrolment_external_call_duration_seconds",
    documentation="Latency of calls to external biometric services",
    labelnames=["service", "operation"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

external_call_failures_total = Counter(
    name="enrolment_external_call_failures_total",
    documentation="Failed calls to external biometric services",
    labelnames=["service", "reason"],  # reason: timeout, transport, http_status, bad_response
    registry=REGISTRY,
)

# =======================
# ISSUANCE METRICS
# =======================

identities_issued_total = Counter(
    name="enrolment_identities_issued_total",
    documentation="Identity numbers issued",
    registry=REGISTRY,
)

issuance_collisions_total = Counter(
    name="enrolment_issuance_collisions_total",
    documentation="Identity number collisions retried during issuance",
    registry=REGISTRY,
)

# =======================
# AUDIT METRICS
# =======================

audit_delivery_failures_total = Counter(
    name="enrolment_audit_delivery_failures_total",
    documentation="Audit events the sink failed to accept",
    labelnames=["event_type"],
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Lazy import: only bind a port when the endpoint is actually wanted
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


class track_duration:
    """
    Context manager for tracking operation duration

    Usage:
        with track_duration(external_call_duration_seconds, service="quality", operation="check"):
            ...
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.timer = None

    def __enter__(self):
        self.timer = self.histogram.labels(**self.labels).time()
        self.timer.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.__exit__(exc_type, exc_val, exc_tb)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def get_counter_value(counter: Counter, **labels) -> float:
    """Current value of a counter sample, 0.0 if never incremented."""
    sample_name = f"{counter._name}_total"
    value = REGISTRY.get_sample_value(sample_name, labels or None)
    return value or 0.0


def record_transition(from_status: str, to_status: str) -> None:
    if from_status != to_status:
        increment_counter(transitions_total, from_status=from_status, to_status=to_status)


def record_external_failure(service: str, reason: str) -> None:
    increment_counter(external_call_failures_total, service=service, reason=reason)
