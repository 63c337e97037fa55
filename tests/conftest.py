"""
Pytest configuration and fixtures for the record exporter.

Provides an in-memory backend double and record factories.
"""

import asyncio
import copy
import fnmatch
import os
import sys
from typing import Any, Dict, List, Optional, Set

import pytest

from record_exporter.accumulator import BulkBatch
from record_exporter.client import BulkItemResult, BulkResult, ItemOutcome, classify_status
from record_exporter.config import BulkConfiguration, ExporterConfiguration, IndexConfiguration
from record_exporter.errors import BackendError, TransientBackendError
from record_exporter.models import Record, RecordType, ValueType
from record_exporter.templates import TemplateSpec

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class InMemoryBackend:
    """BackendClient double with verification helpers and fault injection.

    Indices are created on first write; settings come from the first
    template whose pattern matches, else backend defaults (1 shard, 1 replica).
    Documents are keyed by (routing, id), so a lookup with the wrong routing
    key misses, like a read landing on the wrong shard.
    """

    def __init__(self):
        self.indices: Dict[str, Dict[str, Any]] = {}
        self.templates: Dict[str, TemplateSpec] = {}
        self.bulk_calls: List[BulkBatch] = []
        self.template_calls: List[TemplateSpec] = []
        self.closed = False

        # fault injection
        self.transient_failures = 0  # whole-batch failures before succeeding
        self.reject_ids: Set[str] = set()  # document ids answered with 400
        self.item_statuses: Dict[str, List[int]] = {}  # id -> statuses to return first
        self.template_error: Optional[BackendError] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ---------- BackendClient

    async def write_bulk(self, batch: BulkBatch) -> BulkResult:
        self.bulk_calls.append(batch)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientBackendError(
                "Failed to flush bulk", status=503, reason="Service Unavailable"
            )

        items = []
        for op in batch.operations:
            queued = self.item_statuses.get(op.document_id)
            if queued:
                status = queued.pop(0)
            elif op.document_id in self.reject_ids:
                status = 400
            else:
                status = 201
            outcome = classify_status(status)
            if outcome is ItemOutcome.SUCCESS:
                index = self._index(op.index)
                index["docs"][(op.routing, op.document_id)] = copy.deepcopy(op.document)
            reason = "" if outcome is ItemOutcome.SUCCESS else "mapper_parsing_exception"
            items.append(BulkItemResult(op, status, outcome, reason))
        return BulkResult(items=tuple(items))

    async def read_settings(self, index_pattern: str = "_all") -> Dict[str, Dict[str, Any]]:
        pattern = "*" if index_pattern == "_all" else index_pattern
        return {
            name: {
                "settings": {
                    "index": {
                        "number_of_shards": str(idx["shards"]),
                        "number_of_replicas": str(idx["replicas"]),
                    }
                }
            }
            for name, idx in self.indices.items()
            if fnmatch.fnmatch(name, pattern)
        }

    async def read_document(self, index: str, document_id: str, routing: str):
        idx = self.indices.get(index)
        if idx is None:
            return None
        doc = idx["docs"].get((routing, document_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def put_template(self, spec: TemplateSpec, create: bool = True) -> bool:
        self.template_calls.append(spec)
        if self.template_error is not None:
            raise self.template_error
        if create and spec.name in self.templates:
            return False
        self.templates[spec.name] = spec
        return True

    async def close(self) -> None:
        self.closed = True

    # ---------- verification helpers

    def _index(self, name: str) -> Dict[str, Any]:
        if name not in self.indices:
            shards, replicas = 1, 1
            for spec in self.templates.values():
                if any(fnmatch.fnmatch(name, p) for p in spec.index_patterns):
                    shards, replicas = spec.number_of_shards, spec.number_of_replicas
                    break
            self.indices[name] = {"shards": shards, "replicas": replicas, "docs": {}}
        return self.indices[name]

    def templates_for(self, family: str) -> List[TemplateSpec]:
        return [spec for spec in self.template_calls if spec.name == family]

    def written_ids(self) -> List[str]:
        return [op.document_id for batch in self.bulk_calls for op in batch.operations]


def make_record(
    position: int = 1,
    partition_id: int = 1,
    value_type: ValueType = ValueType.WORKFLOW_INSTANCE,
    record_type: RecordType = RecordType.EVENT,
    intent: str = "ELEMENT_ACTIVATED",
    timestamp: int = 1_571_400_000_000,  # 2019-10-18T12:00:00Z
    value: Optional[Dict[str, Any]] = None,
) -> Record:
    return Record(
        partition_id=partition_id,
        position=position,
        record_type=record_type,
        value_type=value_type,
        intent=intent,
        key=position * 10,
        timestamp=timestamp,
        source_record_position=position - 1,
        broker_version="0.22.0",
        value=value if value is not None else {"bpmnProcessId": "process", "version": 1},
    )


def all_enabled_index(**overrides) -> IndexConfiguration:
    flags = {
        "command": True,
        "event": True,
        "rejection": True,
        "deployment": True,
        "error": True,
        "incident": True,
        "job": True,
        "job_batch": True,
        "message": True,
        "message_subscription": True,
        "variable": True,
        "variable_document": True,
        "workflow_instance": True,
        "workflow_instance_creation": True,
        "workflow_instance_subscription": True,
    }
    flags.update(overrides)
    return IndexConfiguration(prefix="test-record", create_template=True, **flags)


@pytest.fixture
def backend():
    """Fresh in-memory backend for each test."""
    return InMemoryBackend()


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def sync_config(monkeypatch):
    """bulk.size=1, bulk.delay=1, every index flag on: one flush per record."""
    for var in list(os.environ):
        if var.startswith("EXPORTER_"):
            monkeypatch.delenv(var, raising=False)
    return ExporterConfiguration(
        url="http://localhost:9200",
        bulk=BulkConfiguration(size=1, delay=1),
        index=all_enabled_index(),
    )
