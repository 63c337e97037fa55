from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from .models import Record, ValueType, coerce_record_type, coerce_value_type

INDEX_DELIMITER = "_"
INDEX_DATE_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True)
class Route:
    index: str
    document_id: str
    routing: str


class IndexRouter:
    """
    Maps records to (index, document id, routing key).

    Stateless apart from the configured prefix, so one router can be shared by
    any number of drivers. Index names look like
    ``{prefix}_{value-type}_{yyyy-MM-dd}``; every index of a value type shares
    the ``{prefix}_{value-type}`` family that its template matches.
    """

    def __init__(self, prefix: str):
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def family_for(self, value_type) -> str:
        vt = coerce_value_type(value_type)
        return f"{self._prefix}{INDEX_DELIMITER}{vt.index_name}"

    def index_prefix_with_delimiter(self, value_type) -> str:
        return self.family_for(value_type) + INDEX_DELIMITER

    def index_for(self, record: Record) -> str:
        day = datetime.fromtimestamp(record.timestamp / 1000.0, tz=timezone.utc)
        return self.index_prefix_with_delimiter(record.value_type) + day.strftime(
            INDEX_DATE_FORMAT
        )

    @staticmethod
    def id_for(record: Record) -> str:
        return f"{record.partition_id}-{record.position}"

    @staticmethod
    def routing_for(record: Record) -> str:
        return str(record.partition_id)

    def value_type_of_index(self, index: str) -> ValueType | None:
        """Reverse lookup used when verifying per-family settings."""
        for vt in ValueType:
            if index.startswith(self.index_prefix_with_delimiter(vt)):
                return vt
        return None

    def route(self, record: Record) -> Route:
        """Raises UnsupportedRecordType for types outside the enumeration."""
        coerce_record_type(record.record_type)
        return Route(
            index=self.index_for(record),
            document_id=self.id_for(record),
            routing=self.routing_for(record),
        )
