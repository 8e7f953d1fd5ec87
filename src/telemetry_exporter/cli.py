from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from .exporter.dlq import read_dlq
from .exporter.exporter import provision as provision_collections
from .exporter.settings import ExporterSettings
from .store import TimescaleStore
from .utils import count_ndjson

app = typer.Typer(help="telemetry-exporter operational CLI")


def dsn_opt() -> Optional[str]:
    return typer.Option(None, "--dsn", envvar="TELEMETRY_CONNECTION_STRING", help="PostgreSQL DSN")


def _settings(dsn: Optional[str]) -> ExporterSettings:
    settings = ExporterSettings()
    if dsn:
        settings = settings.model_copy(update={"connection_string": dsn})
    return settings


@app.command("ping")
def ping(dsn: Optional[str] = dsn_opt()):
    """Check that the backend accepts connections."""

    async def _run() -> bool:
        store = TimescaleStore.from_settings(_settings(dsn))
        try:
            await store.connect()
            return await store.ping()
        finally:
            await store.close()

    try:
        ok = asyncio.run(_run())
    except Exception as e:
        logger.error(f"Ping failed: {e}")
        typer.echo(json.dumps({"ok": False, "error": str(e)}, indent=2))
        sys.exit(1)
    typer.echo(json.dumps({"ok": ok}, indent=2))


@app.command("provision")
def provision(dsn: Optional[str] = dsn_opt()):
    """Create the logs and telemetry collections and their indexes."""
    settings = _settings(dsn)

    async def _run() -> int:
        store = TimescaleStore.from_settings(settings)
        try:
            await store.connect()
            return await provision_collections(store, settings)
        finally:
            await store.close()

    try:
        indexes = asyncio.run(_run())
    except Exception as e:
        logger.error(f"Provisioning failed: {e}")
        sys.exit(1)
    logger.success(
        f"Provisioned {settings.logs_collection} and {settings.telemetry_collection} "
        f"({indexes} indexes)"
    )


@app.command("wal-stats")
def wal_stats(
    path: Optional[Path] = typer.Option(None, "--path", help="WAL file (default from settings)"),
):
    """Report line counts of the critical-span write-ahead log."""
    stats = count_ndjson(path or ExporterSettings().wal_path)
    typer.echo(json.dumps(stats, indent=2))


@app.command("dlq-stats")
def dlq_stats(
    path: Optional[Path] = typer.Option(None, "--path", help="DLQ file (default from settings)"),
    show: int = typer.Option(0, "--show", help="Print the first N entries"),
):
    """Report line counts of the dead letter queue, optionally printing entries."""
    target = path or ExporterSettings().dlq_path
    typer.echo(json.dumps(count_ndjson(target), indent=2))
    if show > 0:
        for entry in read_dlq(target, max_records=show):
            typer.echo(entry.model_dump_json())


if __name__ == "__main__":
    app()
