"""
Payment FSM Prometheus Metrics Module

Provides observability for the appointment payment lifecycle:
- State transition tracking with labels
- Processor call outcomes and latency
- Duplicate request suppression (idempotency)
- Race condition monitoring (CAS conflicts, lock contention)
- Operator alerts and reconciliation runs
"""

import logging
from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)

# Custom registry for payment metrics (separate from the default process registry)
payment_registry = CollectorRegistry()

# ==============================================================================
# STATE TRANSITION METRICS
# ==============================================================================

payment_state_transitions_total = Counter(
    'payment_state_transitions_total',
    'Total appointment payment state transitions',
    ['from_state', 'to_state'],
    registry=payment_registry
)

payment_transition_duration_seconds = Histogram(
    'payment_transition_duration_seconds',
    'Time spent validating and applying a payment transition',
    ['from_state', 'to_state'],
    registry=payment_registry,
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5)
)

# ==============================================================================
# PROCESSOR METRICS
# ==============================================================================

payment_processor_calls_total = Counter(
    'payment_processor_calls_total',
    'Calls to the external payment processor',
    ['operation', 'outcome'],
    registry=payment_registry
)

payment_processor_latency_seconds = Histogram(
    'payment_processor_latency_seconds',
    'Payment processor call latency',
    ['operation'],
    registry=payment_registry,
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
)

# ==============================================================================
# CONCURRENCY & IDEMPOTENCY METRICS
# ==============================================================================

payment_duplicate_requests_total = Counter(
    'payment_duplicate_requests_total',
    'State-changing requests answered without side effects',
    ['operation', 'reason'],
    registry=payment_registry
)

payment_race_conditions_total = Counter(
    'payment_race_conditions_total',
    'CAS version conflicts detected on payment saves',
    registry=payment_registry
)

payment_lock_contention_total = Counter(
    'payment_lock_contention_total',
    'Per-appointment lock acquisitions that timed out',
    registry=payment_registry
)

# ==============================================================================
# OPERATIONS METRICS
# ==============================================================================

payment_operator_alerts_total = Counter(
    'payment_operator_alerts_total',
    'Alerts raised for operator attention',
    ['kind'],
    registry=payment_registry
)

payment_reconciliation_runs_total = Counter(
    'payment_reconciliation_runs_total',
    'Reconciliation sweeps executed',
    ['status'],
    registry=payment_registry
)

# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


def record_state_transition(from_state: str, to_state: str, duration_seconds: float) -> None:
    payment_state_transitions_total.labels(from_state=from_state, to_state=to_state).inc()
    payment_transition_duration_seconds.labels(
        from_state=from_state, to_state=to_state
    ).observe(duration_seconds)


def record_processor_call(operation: str, outcome: str, duration_seconds: float) -> None:
    payment_processor_calls_total.labels(operation=operation, outcome=outcome).inc()
    payment_processor_latency_seconds.labels(operation=operation).observe(duration_seconds)


def record_duplicate_request(operation: str, reason: str) -> None:
    payment_duplicate_requests_total.labels(operation=operation, reason=reason).inc()


def record_race_condition() -> None:
    payment_race_conditions_total.inc()


def record_lock_contention() -> None:
    payment_lock_contention_total.inc()


def record_operator_alert(kind: str) -> None:
    payment_operator_alerts_total.labels(kind=kind).inc()


def record_reconciliation_run(status: str) -> None:
    payment_reconciliation_runs_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """
    Get payment metrics in Prometheus text format.

    Returns:
        bytes: Prometheus exposition format
    """
    return generate_latest(payment_registry)


def get_metrics_summary() -> Dict[str, float]:
    """
    Human-readable summary of the payment counters.

    Returns:
        Dict mapping metric sample names to summed values
    """
    summary: Dict[str, float] = {}
    for metric in payment_registry.collect():
        for sample in metric.samples:
            if sample.name.endswith('_total'):
                summary[sample.name] = summary.get(sample.name, 0.0) + sample.value
    return summary
