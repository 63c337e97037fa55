from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from pydantic import ValidationError

from .client import HttpBackendClient
from .config import ExporterConfiguration
from .driver import ExporterDriver
from .errors import ExporterError, UnsupportedRecordType
from .models import record_from_json
from .router import IndexRouter
from .templates import TemplateManager

app = typer.Typer(help="record exporter operational CLI")

# ---------------------------
# Common options
# ---------------------------


def url_opt() -> Optional[str]:
    return typer.Option(None, "--url", envvar="EXPORTER_URL", help="Backend URL")


def prefix_opt() -> Optional[str]:
    return typer.Option(None, "--prefix", help="Index prefix (default from config)")


def build_config(
    url: Optional[str] = None,
    prefix: Optional[str] = None,
    bulk_size: Optional[int] = None,
    bulk_delay: Optional[float] = None,
    create_template: Optional[bool] = None,
    dlq: Optional[Path] = None,
) -> ExporterConfiguration:
    """Environment config with CLI overrides on top."""
    cfg = ExporterConfiguration()
    bulk = {k: v for k, v in {"size": bulk_size, "delay": bulk_delay}.items() if v is not None}
    index = {
        k: v
        for k, v in {"prefix": prefix, "create_template": create_template}.items()
        if v is not None
    }
    update = {
        "bulk": cfg.bulk.model_copy(update=bulk),
        "index": cfg.index.model_copy(update=index),
    }
    if url is not None:
        update["url"] = url
    if dlq is not None:
        update["dlq_path"] = dlq
    return cfg.model_copy(update=update)


def _echo(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ---------------------------
# Commands
# ---------------------------


@app.command("export")
def export(
    path: str = typer.Argument(..., help="NDJSON file of records, or '-' for stdin"),
    url: Optional[str] = url_opt(),
    prefix: Optional[str] = prefix_opt(),
    bulk_size: Optional[int] = typer.Option(None, "--bulk-size", help="Max operations per batch"),
    bulk_delay: Optional[float] = typer.Option(None, "--bulk-delay", help="Max buffering seconds"),
    templates: Optional[bool] = typer.Option(None, "--templates/--no-templates"),
    dlq: Optional[Path] = typer.Option(None, "--dlq", help="NDJSON file for rejected records"),
):
    """Export records and print the acknowledged position per partition.

    Lines that are not valid records are rejected (logged, and written to the
    DLQ when one is configured) without stopping the export.
    """
    cfg = build_config(url, prefix, bulk_size, bulk_delay, templates, dlq)

    async def _records(driver: ExporterDriver, lines):
        for n, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = record_from_json(line)
            except (ValidationError, UnsupportedRecordType) as exc:
                logger.warning(f"line {n}: {exc}")
                await driver.reject_input(line, exc)
                continue
            yield record

    async def _run():
        async with HttpBackendClient.from_config(cfg) as client:
            driver = ExporterDriver(client, cfg, name="cli")
            if path == "-":
                return await driver.run(_records(driver, sys.stdin))
            with open(path, "r", encoding="utf-8") as f:
                return await driver.run(_records(driver, f))

    try:
        acked = asyncio.run(_run())
    except ExporterError as exc:
        typer.echo(f"export failed: {exc}", err=True)
        raise typer.Exit(code=1)
    _echo({"acknowledged": {str(k): v for k, v in sorted(acked.items())}})


@app.command("settings")
def settings(
    pattern: str = typer.Argument("_all", help="Index pattern"),
    url: Optional[str] = url_opt(),
):
    """Print shard/replica settings for matching indices."""
    cfg = build_config(url)

    async def _run():
        async with HttpBackendClient.from_config(cfg) as client:
            return await client.read_settings(pattern)

    try:
        body = asyncio.run(_run())
    except ExporterError as exc:
        typer.echo(f"settings failed: {exc}", err=True)
        raise typer.Exit(code=1)
    _echo(body)


@app.command("get")
def get(
    record_json: str = typer.Argument(..., help="Record as JSON"),
    url: Optional[str] = url_opt(),
    prefix: Optional[str] = prefix_opt(),
):
    """Read back the stored document of a record, using its routing key."""
    cfg = build_config(url, prefix)
    try:
        record = record_from_json(record_json)
    except (ValidationError, UnsupportedRecordType) as exc:
        typer.echo(f"invalid record: {exc}", err=True)
        raise typer.Exit(code=1)
    route = IndexRouter(cfg.index.prefix).route(record)

    async def _run():
        async with HttpBackendClient.from_config(cfg) as client:
            return await client.read_document(route.index, route.document_id, route.routing)

    try:
        doc = asyncio.run(_run())
    except ExporterError as exc:
        typer.echo(f"get failed: {exc}", err=True)
        raise typer.Exit(code=1)
    if doc is None:
        typer.echo(f"not found: {route.index}/{route.document_id}", err=True)
        raise typer.Exit(code=1)
    _echo(doc)


@app.command("ensure-templates")
def ensure_templates(url: Optional[str] = url_opt(), prefix: Optional[str] = prefix_opt()):
    """Create index templates for every enabled value type."""
    cfg = build_config(url, prefix)

    async def _run():
        async with HttpBackendClient.from_config(cfg) as client:
            manager = TemplateManager(client, IndexRouter(cfg.index.prefix), cfg.index)
            await manager.ensure_templates()
            return manager.known_families

    try:
        families = asyncio.run(_run())
    except ExporterError as exc:
        typer.echo(f"template setup failed: {exc}", err=True)
        raise typer.Exit(code=1)
    _echo({"templates": families})


if __name__ == "__main__":
    app()
