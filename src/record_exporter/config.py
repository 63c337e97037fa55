from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Record, RecordType, ValueType, coerce_value_type


class BulkConfiguration(BaseModel):
    """Flush thresholds. size <= 1 or delay == 0 flushes after every record."""

    size: int = Field(1000, ge=0)  # max operations per batch
    delay: float = Field(5.0, ge=0)  # max seconds an operation may stay buffered


class RetryConfiguration(BaseModel):
    max_attempts: Optional[int] = Field(None, ge=1)  # None = retry until success
    initial_backoff_ms: int = Field(100, ge=0)
    max_backoff_ms: int = Field(10_000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    jitter: bool = True


def _default_shards() -> Dict[ValueType, int]:
    return {ValueType.WORKFLOW_INSTANCE: 3, ValueType.JOB: 3}


class IndexConfiguration(BaseModel):
    prefix: str = "zeebe-record"
    create_template: bool = True

    # per-family shard counts; families not listed use default_number_of_shards
    number_of_shards: Dict[ValueType, int] = Field(default_factory=_default_shards)
    default_number_of_shards: int = Field(1, ge=1)

    # record types
    command: bool = False
    event: bool = True
    rejection: bool = False

    # value types
    deployment: bool = True
    error: bool = True
    incident: bool = True
    job: bool = True
    job_batch: bool = False
    message: bool = False
    message_subscription: bool = False
    variable: bool = True
    variable_document: bool = False
    workflow_instance: bool = True
    workflow_instance_creation: bool = False
    workflow_instance_subscription: bool = False

    @field_validator("prefix")
    @classmethod
    def check_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("index prefix must not be empty")
        if v != v.lower():
            raise ValueError("index prefix must be lowercase")
        return v

    @field_validator("number_of_shards", mode="before")
    @classmethod
    def check_shards(cls, v):
        if not isinstance(v, dict):
            return v
        out = {}
        for k, n in v.items():
            if int(n) < 1:
                raise ValueError(f"number_of_shards for {k} must be >= 1")
            out[coerce_value_type(k)] = int(n)
        return out

    def record_type_flags(self) -> Dict[RecordType, bool]:
        return {
            RecordType.COMMAND: self.command,
            RecordType.EVENT: self.event,
            RecordType.COMMAND_REJECTION: self.rejection,
        }

    def value_type_flags(self) -> Dict[ValueType, bool]:
        return {
            ValueType.DEPLOYMENT: self.deployment,
            ValueType.ERROR: self.error,
            ValueType.INCIDENT: self.incident,
            ValueType.JOB: self.job,
            ValueType.JOB_BATCH: self.job_batch,
            ValueType.MESSAGE: self.message,
            ValueType.MESSAGE_SUBSCRIPTION: self.message_subscription,
            ValueType.VARIABLE: self.variable,
            ValueType.VARIABLE_DOCUMENT: self.variable_document,
            ValueType.WORKFLOW_INSTANCE: self.workflow_instance,
            ValueType.WORKFLOW_INSTANCE_CREATION: self.workflow_instance_creation,
            ValueType.WORKFLOW_INSTANCE_SUBSCRIPTION: self.workflow_instance_subscription,
        }

    def is_record_type_enabled(self, record_type) -> bool:
        return self.record_type_flags().get(record_type, False)

    def is_value_type_enabled(self, value_type) -> bool:
        """Raises UnsupportedRecordType for values outside ValueType."""
        return self.value_type_flags()[coerce_value_type(value_type)]

    def should_index(self, record: Record) -> bool:
        return self.is_record_type_enabled(record.record_type) and self.is_value_type_enabled(
            record.value_type
        )

    def enabled_value_types(self) -> List[ValueType]:
        return [vt for vt, enabled in self.value_type_flags().items() if enabled]

    def shards_for(self, value_type: ValueType) -> int:
        return self.number_of_shards.get(value_type, self.default_number_of_shards)


class ExporterConfiguration(BaseSettings):
    """Exporter settings, read from EXPORTER_* environment variables or .env.

    Nested keys use a double underscore, e.g. ``EXPORTER_BULK__SIZE=1``.
    """

    model_config = SettingsConfigDict(
        env_prefix="EXPORTER_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    url: str = "http://localhost:9200"
    request_timeout: float = Field(30.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)  # passed through opaquely
    bulk: BulkConfiguration = Field(default_factory=BulkConfiguration)
    index: IndexConfiguration = Field(default_factory=IndexConfiguration)
    retry: RetryConfiguration = Field(default_factory=RetryConfiguration)
    dlq_path: Optional[Path] = None


@lru_cache()
def get_configuration() -> ExporterConfiguration:
    return ExporterConfiguration()
