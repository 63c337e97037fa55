"""
Pydantic data models for the record exporter.

Records are immutable; serialization is a pair of pure functions with no
shared serializer state, so it is safe to call from any task.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import UnsupportedRecordType


class RecordType(str, Enum):
    COMMAND = "COMMAND"
    EVENT = "EVENT"
    COMMAND_REJECTION = "COMMAND_REJECTION"


class ValueType(str, Enum):
    DEPLOYMENT = "DEPLOYMENT"
    ERROR = "ERROR"
    INCIDENT = "INCIDENT"
    JOB = "JOB"
    JOB_BATCH = "JOB_BATCH"
    MESSAGE = "MESSAGE"
    MESSAGE_SUBSCRIPTION = "MESSAGE_SUBSCRIPTION"
    VARIABLE = "VARIABLE"
    VARIABLE_DOCUMENT = "VARIABLE_DOCUMENT"
    WORKFLOW_INSTANCE = "WORKFLOW_INSTANCE"
    WORKFLOW_INSTANCE_CREATION = "WORKFLOW_INSTANCE_CREATION"
    WORKFLOW_INSTANCE_SUBSCRIPTION = "WORKFLOW_INSTANCE_SUBSCRIPTION"

    @property
    def index_name(self) -> str:
        """Name used inside index names, e.g. ``workflow-instance``."""
        return self.value.lower().replace("_", "-")


def coerce_record_type(value: Any) -> RecordType:
    if isinstance(value, RecordType):
        return value
    try:
        return RecordType(str(value).upper())
    except ValueError:
        raise UnsupportedRecordType(value) from None


def coerce_value_type(value: Any) -> ValueType:
    if isinstance(value, ValueType):
        return value
    try:
        return ValueType(str(value).upper().replace("-", "_"))
    except ValueError:
        raise UnsupportedRecordType(value) from None


class Record(BaseModel):
    """One exported workflow engine record, tagged with partition and position."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    partition_id: int
    position: int
    record_type: RecordType
    value_type: ValueType
    intent: str
    key: int = -1
    timestamp: int = 0  # epoch millis
    source_record_position: int = -1
    rejection_type: str = "NULL_VAL"
    rejection_reason: str = ""
    broker_version: str = ""
    value: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("record_type", mode="before")
    @classmethod
    def check_record_type(cls, v):
        return coerce_record_type(v)

    @field_validator("value_type", mode="before")
    @classmethod
    def check_value_type(cls, v):
        return coerce_value_type(v)

    @field_validator("partition_id")
    @classmethod
    def check_partition(cls, v):
        if v < 0:
            raise ValueError("partitionId must be non-negative")
        return v


def record_to_dict(record: Record) -> Dict[str, Any]:
    """JSON-compatible document for a record (camelCase keys, payload order kept)."""
    return record.model_dump(mode="json", by_alias=True)


def record_to_json(record: Record) -> str:
    return json.dumps(record_to_dict(record), separators=(",", ":"))


def record_from_json(text: str | bytes) -> Record:
    return Record.model_validate_json(text)


def iter_records(lines: Iterable[str]) -> Iterator[Record]:
    """Yield records from NDJSON lines, skipping blank lines."""
    for line in lines:
        line = line.strip()
        if not line:
            continue
        yield record_from_json(line)
