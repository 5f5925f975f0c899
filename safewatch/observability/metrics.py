"""
Metrics definitions for SafeWatch.

This module defines Prometheus metrics for monitoring
obligations, emergencies, notification delivery and timers.
"""

from prometheus_client import Counter, Histogram, Gauge

# 카운터 메트릭
updates_received = Counter(
    "safewatch_updates_received_total",
    "Number of location/check-in updates received",
    ["source"]
)

updates_duplicate = Counter(
    "safewatch_updates_duplicate_total",
    "Number of duplicate updates filtered out"
)

obligations_created = Counter(
    "safewatch_obligations_created_total",
    "Obligations created",
    ["kind"]
)

obligation_transitions = Counter(
    "safewatch_obligation_transitions_total",
    "Obligation status transitions",
    ["kind", "status"]
)

emergencies_triggered = Counter(
    "safewatch_emergencies_triggered_total",
    "Emergencies created",
    ["reason"]
)

emergency_duplicates = Counter(
    "safewatch_emergency_duplicate_triggers_total",
    "Triggers that found an already open emergency"
)

emergency_transitions = Counter(
    "safewatch_emergency_transitions_total",
    "Emergency state transitions",
    ["status"]
)

escalations = Counter(
    "safewatch_escalations_total",
    "Emergency escalations",
    ["level"]
)

notification_attempts = Counter(
    "safewatch_notification_attempts_total",
    "Notification attempt status changes",
    ["channel", "status"]
)

delivery_failures = Counter(
    "safewatch_delivery_failures_total",
    "Recipients whose channels were all exhausted",
    ["priority"]
)

races_detected = Counter(
    "safewatch_races_detected_total",
    "Transitions discarded because another writer won",
    ["entity_type"]
)

concurrency_retries = Counter(
    "safewatch_concurrency_retries_total",
    "Optimistic concurrency retries",
    ["operation"]
)

configuration_warnings = Counter(
    "safewatch_configuration_warnings_total",
    "Degenerate configuration encountered during evaluation",
    ["kind"]
)

timers_fired = Counter(
    "safewatch_timers_fired_total",
    "Durable timers processed",
    ["kind", "outcome"]
)

# 히스토그램 메트릭
classify_seconds = Histogram(
    "safewatch_classify_duration_seconds",
    "Time spent classifying a location",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1]
)

timer_lag_seconds = Histogram(
    "safewatch_timer_lag_seconds",
    "Delay between timer fire_at and processing",
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0]
)

end_to_end_seconds = Histogram(
    "safewatch_update_duration_seconds",
    "Total update processing latency",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0]
)

# 게이지 메트릭
queue_depth = Gauge(
    "safewatch_internal_queue_depth",
    "Current depth of ingestion queue"
)

open_emergencies = Gauge(
    "safewatch_open_emergencies",
    "Emergencies currently active or acknowledged"
)

pending_timers = Gauge(
    "safewatch_pending_timers",
    "Durable timers waiting to fire"
)

idem_store_size = Gauge(
    "safewatch_idem_store_size",
    "Current number of items in idempotency store"
)

uptime_seconds = Gauge(
    "safewatch_uptime_seconds",
    "Service uptime in seconds"
)
