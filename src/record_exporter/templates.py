"""
Index templates, one per value-type family.

A template fixes shard and replica counts for every dated index created under
its family, so it has to exist before the first bulk write lands there.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from .config import IndexConfiguration
from .errors import BackendError, ConfigurationError
from .metrics import TEMPLATES_CREATED_TOTAL
from .models import ValueType, coerce_value_type
from .router import IndexRouter

NUMBER_OF_REPLICAS = 0

# Envelope fields of a serialized Record; the payload stays dynamic.
RECORD_MAPPINGS: Dict[str, Any] = {
    "dynamic": "strict",
    "properties": {
        "partitionId": {"type": "integer"},
        "position": {"type": "long"},
        "sourceRecordPosition": {"type": "long"},
        "key": {"type": "long"},
        "timestamp": {"type": "date"},
        "recordType": {"type": "keyword"},
        "valueType": {"type": "keyword"},
        "intent": {"type": "keyword"},
        "rejectionType": {"type": "keyword"},
        "rejectionReason": {"type": "text"},
        "brokerVersion": {"type": "keyword"},
        "value": {"type": "object", "dynamic": True},
    },
}


@dataclass(frozen=True)
class TemplateSpec:
    name: str
    index_patterns: List[str]
    number_of_shards: int
    number_of_replicas: int = NUMBER_OF_REPLICAS
    mappings: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(RECORD_MAPPINGS))
    aliases: List[str] = field(default_factory=list)

    def to_body(self) -> Dict[str, Any]:
        return {
            "index_patterns": list(self.index_patterns),
            "order": 10,
            "settings": {
                "number_of_shards": self.number_of_shards,
                "number_of_replicas": self.number_of_replicas,
            },
            "aliases": {alias: {} for alias in self.aliases},
            "mappings": copy.deepcopy(self.mappings),
        }


class TemplateManager:
    """Creates each family's template at most once per process.

    Shared across drivers; per-family locks make concurrent first calls
    issue a single backend request.
    """

    def __init__(self, client, router: IndexRouter, config: IndexConfiguration):
        self._client = client
        self._router = router
        self._config = config
        self._known: Dict[str, TemplateSpec] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def known_families(self) -> List[str]:
        return sorted(self._known)

    def shards_for(self, value_type) -> int:
        return self._config.shards_for(coerce_value_type(value_type))

    def template_for(self, value_type) -> TemplateSpec:
        vt = coerce_value_type(value_type)
        family = self._router.family_for(vt)
        return TemplateSpec(
            name=family,
            index_patterns=[self._router.index_prefix_with_delimiter(vt) + "*"],
            number_of_shards=self.shards_for(vt),
            aliases=[family],
        )

    async def ensure_template(self, value_type) -> TemplateSpec:
        """Create the family template if absent; raises ConfigurationError on failure."""
        vt: ValueType = coerce_value_type(value_type)
        family = self._router.family_for(vt)
        cached = self._known.get(family)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(family, asyncio.Lock())
        async with lock:
            cached = self._known.get(family)
            if cached is not None:
                return cached

            spec = self.template_for(vt)
            try:
                created = await self._client.put_template(spec, create=True)
            except BackendError as exc:
                logger.error(f"Template creation failed for {family}: {exc}")
                raise ConfigurationError(
                    f"Failed to put index template {family}: {exc}"
                ) from exc

            if created:
                TEMPLATES_CREATED_TOTAL.labels(family=family).inc()
                logger.info(
                    f"Created index template {family} "
                    f"(shards={spec.number_of_shards}, replicas={spec.number_of_replicas})"
                )
            else:
                logger.debug(f"Index template {family} already exists")
            self._known[family] = spec
            return spec

    async def ensure_templates(self, value_types: Optional[List[ValueType]] = None) -> None:
        for vt in value_types if value_types is not None else self._config.enabled_value_types():
            await self.ensure_template(vt)
