from prometheus_client import Counter, Gauge, Histogram

SNAPSHOT_LATENCY = Histogram(
    "realtime_snapshot_seconds",
    "Snapshot read latency in seconds",
    ["resource"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
SNAPSHOT_ERRORS = Counter(
    "realtime_snapshot_errors_total",
    "Snapshot reads that failed or timed out",
    ["resource"],
)
FEED_EVENTS = Counter(
    "realtime_feed_events_total",
    "Change events delivered to subscribers",
    ["resource", "operation"],
)
FEED_INVALID = Counter(
    "realtime_feed_invalid_total",
    "Change-feed messages dropped as malformed",
    ["resource"],
)
FEED_RECONNECTS = Counter(
    "realtime_feed_reconnects_total",
    "Change-feed reconnect attempts",
    ["resource"],
)
ACTIVE_SUBSCRIPTIONS = Gauge(
    "realtime_active_subscriptions",
    "Open change-feed subscriptions",
)
MUTATIONS = Counter(
    "realtime_mutations_total",
    "Row writes by outcome",
    ["resource", "operation", "status"],
)
