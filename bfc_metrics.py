"""
Beckn Flow Conformance - Prometheus Metrics
Observability for rule outcomes, store health and extraction quality
"""

from prometheus_client import Counter, Histogram, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# RULE METRICS
# ============================================

rule_check_counter = Counter(
    'bfc_rule_checks_total',
    'Total number of rule assertions evaluated',
    ['rule_id', 'family', 'outcome'],
    registry=metrics_registry
)

rule_violation_counter = Counter(
    'bfc_rule_violations_total',
    'Total number of failed rule assertions',
    ['rule_id', 'criticality'],
    registry=metrics_registry
)

unknown_rule_set_counter = Counter(
    'bfc_unknown_rule_sets_total',
    'Validation requests with no registered rule set',
    ['domain', 'version', 'action'],
    registry=metrics_registry
)

# ============================================
# MESSAGE METRICS
# ============================================

messages_validated_counter = Counter(
    'bfc_messages_validated_total',
    'Total number of messages validated',
    ['domain', 'action', 'verdict'],  # valid, invalid, unchecked
    registry=metrics_registry
)

validation_duration_histogram = Histogram(
    'bfc_validation_duration_seconds',
    'Time spent running validators for one message',
    ['action'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
    registry=metrics_registry
)

# ============================================
# STORE & EXTRACTION METRICS
# ============================================

store_operation_counter = Counter(
    'bfc_store_operations_total',
    'Action store operations',
    ['operation', 'result'],  # save/load, ok/miss/error
    registry=metrics_registry
)

extraction_error_counter = Counter(
    'bfc_extraction_errors_total',
    'Path expressions that failed to evaluate',
    ['action'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_rule_outcome(rule_id: str, family: str, outcome: str, criticality: str = "important"):
    """Record one rule assertion."""
    rule_check_counter.labels(
        rule_id=rule_id,
        family=family,
        outcome=outcome
    ).inc()

    if outcome == "failed":
        rule_violation_counter.labels(
            rule_id=rule_id,
            criticality=criticality
        ).inc()

def record_unknown_rule_set(domain: str, version: str, action: str):
    unknown_rule_set_counter.labels(domain=domain, version=version, action=action).inc()

def record_message_validated(domain: str, action: str, passed: int, failed: int, duration: float):
    """Record per-message verdict and latency."""
    if failed:
        verdict = "invalid"
    elif passed:
        verdict = "valid"
    else:
        verdict = "unchecked"
    messages_validated_counter.labels(domain=domain, action=action, verdict=verdict).inc()
    validation_duration_histogram.labels(action=action).observe(duration)

def record_store_operation(operation: str, result: str):
    store_operation_counter.labels(operation=operation, result=result).inc()

def record_extraction_error(action: str):
    extraction_error_counter.labels(action=action).inc()
