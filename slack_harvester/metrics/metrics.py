"""Prometheus metrics for harvest runs, upstream calls and sink deliveries."""

import prometheus_client as _prom

Counter = _prom.Counter
Histogram = _prom.Histogram


# Per-call metrics for every upstream call (Slack, datastore, embedding endpoint)
API_LATENCY = Histogram(
    "harvester_api_latency_seconds",
    "Upstream API latency in seconds by source_id, method and status",
    ["source_id", "method", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")),
)
API_CALLS = Counter(
    "harvester_api_calls_total",
    "Upstream API call count by source_id, method and status",
    ["source_id", "method", "status"],
)

# Operation metrics (whole run, per page)
OP_LATENCY = Histogram(
    "harvester_operation_latency_seconds",
    "Total latency of harvester operations by source_id and operation",
    ["source_id", "operation"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, float("inf")),
)
OP_ITEMS = Histogram(
    "harvester_operation_items",
    "Number of items handled by harvester operations",
    ["source_id", "operation"],
    buckets=(0, 1, 5, 10, 25, 50, 100, 200, 500, 1000, float("inf")),
)

SINK_WRITES = Counter(
    "harvester_sink_writes_total",
    "Batches delivered to downstream sinks by sink and outcome",
    ["sink", "outcome"],
)
FAILURES = Counter(
    "harvester_failures_total",
    "Logged-and-skipped failures by operation",
    ["operation"],
)
