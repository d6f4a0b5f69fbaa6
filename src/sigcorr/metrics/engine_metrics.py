"""
Prometheus Metrics for the grouping, anomaly and correlation engines
"""
from prometheus_client import Counter, Histogram
import time
from functools import wraps

# Counters
groups_total = Counter(
    "sigcorr_groups_total",
    "Incident group upserts",
    ["change"]
)

severity_escalations_total = Counter(
    "sigcorr_severity_escalations_total",
    "Groups auto-escalated to HIGH by a velocity spike"
)

spike_check_errors_total = Counter(
    "sigcorr_spike_check_errors_total",
    "Spike checks that failed and were treated as not anomalous"
)

duplicate_events_total = Counter(
    "sigcorr_duplicate_events_total",
    "Alerts dropped because their source event was already ingested"
)

anomalies_detected_total = Counter(
    "sigcorr_anomalies_detected_total",
    "Anomalies reported by the batch scan",
    ["recorded"]
)

rules_upserted_total = Counter(
    "sigcorr_correlation_rules_upserted_total",
    "Correlation rules written by pair mining"
)

correlations_persisted_total = Counter(
    "sigcorr_alert_correlations_persisted_total",
    "Scored incident correlations written by the real-time scorer"
)

side_effect_failures_total = Counter(
    "sigcorr_side_effect_failures_total",
    "Best-effort writes that failed",
    ["kind"]
)

# Histograms
job_duration = Histogram(
    "sigcorr_job_duration_seconds",
    "Scheduled job duration per workspace",
    ["job"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0]
)

upsert_latency = Histogram(
    "sigcorr_upsert_latency_seconds",
    "Grouping upsert latency in seconds",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)


# Decorator for timing functions
def observe_duration(metric):
    """Decorator to observe function duration"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                metric.observe(time.time() - start)
        return wrapper
    return decorator


def record_side_effect_failure(kind: str):
    side_effect_failures_total.labels(kind=kind).inc()
