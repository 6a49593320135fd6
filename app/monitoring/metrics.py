"""Metric definitions for matchmaking, sessions and the realtime layer."""

from __future__ import annotations

from .registry import registry


queue_operations_total = registry.counter(
    "queue_operations_total",
    "Waiting queue operations by kind (join, leave, requeue, stale).",
    label_names=("operation",),
)

queue_waiting = registry.gauge(
    "queue_waiting_users",
    "Number of WAITING queue entries seen by the last matcher tick.",
)

matches_proposed_total = registry.counter(
    "matches_proposed_total",
    "Matches created, by source.",
    label_names=("source",),
)

match_transitions_total = registry.counter(
    "match_transitions_total",
    "Match status transitions.",
    label_names=("status",),
)

session_transitions_total = registry.counter(
    "session_transitions_total",
    "Session state transitions, by target state and reason.",
    label_names=("state", "reason"),
)

matcher_tick_duration_seconds = registry.histogram(
    "matcher_tick_duration_seconds",
    "Execution time of matcher ticks.",
)

session_duration_seconds = registry.histogram(
    "session_duration_seconds",
    "Duration of calls that reached LIVE, by how they finished.",
    label_names=("state",),
    buckets=(10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0),
)

scheduler_failures_total = registry.counter(
    "scheduler_failures_total",
    "Background scheduler ticks that raised.",
    label_names=("job",),
)

notifications_total = registry.counter(
    "notifications_total",
    "Notifications produced, by type and outcome (stored, duplicate, failed).",
    label_names=("type", "outcome"),
)

notifications_delivered_total = registry.counter(
    "notifications_delivered_total",
    "Notifications pushed live to at least one connection.",
    label_names=("type",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime messages processed by the websocket registries.",
    label_names=("topic", "direction", "action"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)

realtime_subscriptions = registry.gauge(
    "realtime_pubsub_subscriptions",
    "Number of active broker subscriptions.",
    label_names=("topic", "backend"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failed attempts to publish realtime events to the broker.",
    label_names=("topic", "backend", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Broker transport restarts after reader or publish failures.",
    label_names=("backend", "reason"),
)

signaling_frames_total = registry.counter(
    "signaling_frames_total",
    "Inbound signaling frames by event and outcome.",
    label_names=("event", "outcome"),
)
