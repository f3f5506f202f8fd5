"""Prometheus metrics for the restock prediction engine."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("restock", "Restock prediction engine info")
app_info.info({"version": "0.1.0", "name": "restock"})

# Run metrics
prediction_runs_total = Counter(
    "prediction_runs_total",
    "Total number of prediction runs",
    ["trigger", "status"],
)

prediction_run_duration_seconds = Histogram(
    "prediction_run_duration_seconds",
    "Time spent in a full prediction run",
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)

last_run_timestamp = Gauge(
    "prediction_last_run_timestamp_seconds",
    "Unix timestamp of the last completed prediction run",
)

# EMA metrics
ema_events_folded_total = Counter(
    "ema_events_folded_total",
    "Purchase events folded into interval estimates",
)

# Evaluator metrics
auto_adds_total = Counter(
    "auto_adds_total",
    "List entries created by the rule evaluator",
)

suggestions_total = Counter(
    "suggestions_total",
    "Due rules flagged as suggestions",
)

rule_errors_total = Counter(
    "rule_errors_total",
    "Per-rule failures recovered during a run",
    ["stage"],
)

# Feedback metrics
confidence_feedback_total = Counter(
    "confidence_feedback_total",
    "Confidence adjustments from user list actions",
    ["signal"],
)
