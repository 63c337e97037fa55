"""
Workflow Record Exporter

Streams workflow engine records into an Elasticsearch-compatible backend:
records are routed to per-type dated indices, batched by size/delay, written
with the bulk API and acknowledged back to the source once durable.

Usage:
    from record_exporter import ExporterConfiguration, ExporterDriver, HttpBackendClient

    cfg = ExporterConfiguration(url="http://localhost:9200")
    client = HttpBackendClient.from_config(cfg)
    async with ExporterDriver(client, cfg, on_acknowledge=ack) as driver:
        await driver.export(record)
"""

from .accumulator import BulkAccumulator, BulkBatch, BulkOperation
from .client import BackendClient, BulkItemResult, BulkResult, HttpBackendClient, ItemOutcome
from .config import (
    BulkConfiguration,
    ExporterConfiguration,
    IndexConfiguration,
    RetryConfiguration,
    get_configuration,
)
from .dlq import DeadLetterQueue, DLQRecord
from .driver import DriverState, ExporterDriver, FlushReport
from .errors import (
    BackendError,
    ConfigurationError,
    ExporterError,
    RejectedRecordError,
    TransientBackendError,
    UnsupportedRecordType,
)
from .models import Record, RecordType, ValueType, record_from_json, record_to_dict, record_to_json
from .policy import RetryPolicy, default_retry_classifier
from .router import IndexRouter, Route
from .templates import TemplateManager, TemplateSpec

__version__ = "1.0.0"
__all__ = [
    # models
    "Record",
    "RecordType",
    "ValueType",
    "record_to_dict",
    "record_to_json",
    "record_from_json",
    # pipeline
    "IndexRouter",
    "Route",
    "TemplateManager",
    "TemplateSpec",
    "BulkAccumulator",
    "BulkBatch",
    "BulkOperation",
    "BackendClient",
    "HttpBackendClient",
    "BulkResult",
    "BulkItemResult",
    "ItemOutcome",
    "ExporterDriver",
    "DriverState",
    "FlushReport",
    # config / policies
    "ExporterConfiguration",
    "BulkConfiguration",
    "IndexConfiguration",
    "RetryConfiguration",
    "get_configuration",
    "RetryPolicy",
    "default_retry_classifier",
    # tooling
    "DeadLetterQueue",
    "DLQRecord",
    # errors
    "ExporterError",
    "ConfigurationError",
    "BackendError",
    "TransientBackendError",
    "RejectedRecordError",
    "UnsupportedRecordType",
]
