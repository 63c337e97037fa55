"""
Backend client for an Elasticsearch-compatible REST API.

Only four endpoints are used: bulk write, settings read, document read and
legacy index templates. Every error response is classified here, so callers
only ever see BackendError / TransientBackendError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

import httpx
from loguru import logger

from .accumulator import BulkBatch, BulkOperation
from .config import ExporterConfiguration
from .errors import BackendError, is_retryable_status, map_http_error
from .templates import TemplateSpec


class ItemOutcome(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"  # client error, never retried
    TRANSIENT = "transient"  # server/overload error, retried


def classify_status(status: int) -> ItemOutcome:
    if status < 400:
        return ItemOutcome.SUCCESS
    if is_retryable_status(status):
        return ItemOutcome.TRANSIENT
    return ItemOutcome.REJECTED


@dataclass(frozen=True)
class BulkItemResult:
    operation: BulkOperation
    status: int
    outcome: ItemOutcome
    reason: str = ""


@dataclass(frozen=True)
class BulkResult:
    items: Tuple[BulkItemResult, ...] = ()

    @property
    def succeeded(self) -> Tuple[BulkItemResult, ...]:
        return tuple(i for i in self.items if i.outcome is ItemOutcome.SUCCESS)

    @property
    def rejected(self) -> Tuple[BulkItemResult, ...]:
        return tuple(i for i in self.items if i.outcome is ItemOutcome.REJECTED)

    @property
    def transient(self) -> Tuple[BulkItemResult, ...]:
        return tuple(i for i in self.items if i.outcome is ItemOutcome.TRANSIENT)

    @property
    def is_success(self) -> bool:
        return all(i.outcome is ItemOutcome.SUCCESS for i in self.items)


@runtime_checkable
class BackendClient(Protocol):
    async def write_bulk(self, batch: BulkBatch) -> BulkResult: ...

    async def read_settings(self, index_pattern: str = "_all") -> Dict[str, Dict[str, Any]]: ...

    async def read_document(
        self, index: str, document_id: str, routing: str
    ) -> Optional[Dict[str, Any]]: ...

    async def put_template(self, spec: TemplateSpec, create: bool = True) -> bool: ...

    async def close(self) -> None: ...


def bulk_body(batch: BulkBatch) -> str:
    """NDJSON bulk request body: one action line and one source line per op."""
    lines = []
    for op in batch.operations:
        action = {"index": {"_index": op.index, "_id": op.document_id, "routing": op.routing}}
        lines.append(json.dumps(action, separators=(",", ":")))
        lines.append(json.dumps(op.document, separators=(",", ":")))
    return "\n".join(lines) + "\n"


def _item_reason(entry: Dict[str, Any]) -> str:
    err = entry.get("error")
    if isinstance(err, dict):
        return err.get("reason") or err.get("type") or ""
    return str(err) if err else ""


class HttpBackendClient:
    """Async REST client. Connection parameters (headers, auth) pass through untouched."""

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        auth: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=url,
            timeout=request_timeout,
            headers=headers or {},
            auth=auth,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ExporterConfiguration, **kwargs) -> "HttpBackendClient":
        return cls(
            config.url,
            request_timeout=config.request_timeout,
            headers=config.headers,
            **kwargs,
        )

    async def __aenter__(self) -> "HttpBackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise map_http_error(exc, f"{method} {path} failed") from exc

    # ---------- writes

    async def write_bulk(self, batch: BulkBatch) -> BulkResult:
        if not batch:
            return BulkResult()

        resp = await self._request(
            "POST",
            "/_bulk",
            content=bulk_body(batch).encode(),
            headers={"Content-Type": "application/x-ndjson"},
        )
        if resp.status_code >= 400:
            raise map_http_error(resp, "Failed to flush bulk")

        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendError(
                "Bulk response is not JSON", status=resp.status_code, reason=str(exc)
            ) from exc
        raw_items = data.get("items") or []
        if len(raw_items) != len(batch):
            raise BackendError(
                f"Bulk response has {len(raw_items)} items for {len(batch)} operations",
                status=resp.status_code,
            )

        items = []
        for op, raw in zip(batch.operations, raw_items):
            entry = raw.get("index") or next(iter(raw.values()), {})
            status = int(entry.get("status", 500))
            items.append(
                BulkItemResult(
                    operation=op,
                    status=status,
                    outcome=classify_status(status),
                    reason=_item_reason(entry),
                )
            )
        result = BulkResult(items=tuple(items))
        if data.get("errors"):
            logger.debug(
                f"Bulk flush had item errors: rejected={len(result.rejected)} "
                f"transient={len(result.transient)}"
            )
        return result

    async def put_template(self, spec: TemplateSpec, create: bool = True) -> bool:
        """Returns False if create=True and the template already exists."""
        params = {"create": "true"} if create else {}
        resp = await self._request(
            "PUT", f"/_template/{spec.name}", params=params, json=spec.to_body()
        )
        if create and resp.status_code == 400 and "already exists" in resp.text:
            return False
        if resp.status_code >= 400:
            raise map_http_error(resp, f"Failed to put index template {spec.name}")
        return True

    # ---------- reads

    async def read_settings(self, index_pattern: str = "_all") -> Dict[str, Dict[str, Any]]:
        resp = await self._request("GET", f"/{index_pattern}/_settings")
        if resp.status_code >= 400:
            raise map_http_error(resp, "Failed to get index settings")
        return resp.json()

    async def read_document(
        self, index: str, document_id: str, routing: str
    ) -> Optional[Dict[str, Any]]:
        resp = await self._request(
            "GET", f"/{index}/_doc/{document_id}", params={"routing": routing}
        )
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise map_http_error(resp, f"Failed to get record {document_id} from index {index}")
        return resp.json().get("_source")
