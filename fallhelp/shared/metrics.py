"""
Shared Prometheus metrics registry.

The ingest router, dispatcher and live gateway all increment these.
`fallhelp.live.app` serves them with prometheus_client.generate_latest().
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingest
ingest_messages_total = Counter(
    "fallhelp_ingest_messages_total",
    "Total MQTT telemetry messages routed",
    ["kind", "result"],  # event_created | live_only | status_updated | unknown_device | unpaired_device | malformed | bad_topic | queue_full | persist_failed | handler_error
)

ingest_queue_depth = Gauge(
    "fallhelp_ingest_queue_depth",
    "Current depth of each per-device ingest shard",
    ["shard"],
)

ingest_persist_retries_total = Counter(
    "fallhelp_ingest_persist_retries_total",
    "Handler retries triggered by a retryable persistence failure",
    ["kind"],
)

handler_duration_seconds = Histogram(
    "fallhelp_handler_duration_seconds",
    "Time spent inside a telemetry handler",
    ["kind"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Events
events_created_total = Counter(
    "fallhelp_events_created_total",
    "Events persisted by the event store",
    ["event_type"],
)

# Fan-out
notifications_created_total = Counter(
    "fallhelp_notifications_created_total",
    "Notification rows inserted",
    ["notification_type"],
)

push_deliveries_total = Counter(
    "fallhelp_push_deliveries_total",
    "Push delivery attempts by outcome",
    ["result"],  # ok | error | timeout | invalid_token
)

fanout_failures_total = Counter(
    "fallhelp_fanout_failures_total",
    "Fan-out branch failures",
    ["branch"],  # live | notify
)

# Live channel
live_messages_total = Counter(
    "fallhelp_live_messages_total",
    "Live channel messages emitted",
    ["message"],
)

live_connections = Gauge(
    "fallhelp_live_connections",
    "Currently connected live channel clients",
)

mqtt_connected = Gauge(
    "fallhelp_mqtt_connected",
    "1 when the telemetry router is connected to the broker",
)
