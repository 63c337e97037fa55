"""
Exporter metrics, registered in the Prometheus global REGISTRY on import.
"""

from prometheus_client import Counter, Gauge, Histogram

RECORDS_TOTAL = Counter(
    "exporter_records_total",
    "Records seen by the exporter driver",
    ["value_type", "outcome"],  # exported | skipped | rejected
)

FLUSH_TOTAL = Counter(
    "exporter_flush_total",
    "Bulk flush attempts by outcome",
    ["outcome"],  # success | partial | transient | failed
)

FLUSH_LATENCY_SECONDS = Histogram(
    "exporter_flush_latency_seconds",
    "Bulk write latency in seconds",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

BULK_BATCH_SIZE = Histogram(
    "exporter_bulk_batch_size",
    "Operations per flushed bulk batch",
    buckets=[1, 5, 10, 50, 100, 250, 500, 1000, 2500, 5000],
)

ACKNOWLEDGED_POSITION = Gauge(
    "exporter_acknowledged_position",
    "Last acknowledged source position per partition",
    ["partition"],
)

TEMPLATES_CREATED_TOTAL = Counter(
    "exporter_templates_created_total",
    "Index templates created by this process",
    ["family"],
)


class MetricsRegistry:
    """Structured access to the exporter's metrics."""

    records_total = RECORDS_TOTAL
    flush_total = FLUSH_TOTAL
    flush_latency_seconds = FLUSH_LATENCY_SECONDS
    bulk_batch_size = BULK_BATCH_SIZE
    acknowledged_position = ACKNOWLEDGED_POSITION
    templates_created_total = TEMPLATES_CREATED_TOTAL


metrics_registry = MetricsRegistry()
