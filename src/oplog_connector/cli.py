"""Typer CLI for the oplog connector."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from bson import json_util
from rich.console import Console
from rich.table import Table

from oplog_connector.config.loader import load_connector_config
from oplog_connector.config.models import ConnectorConfig, WebhookSinkConfig
from oplog_connector.errors import ConnectorError
from oplog_connector.observability.logging import configure_logging
from oplog_connector.pipeline.connector import OplogConnector
from oplog_connector.sinks.webhook import WebhookSink
from oplog_connector.sources.mongo.checkpoint import (
    checkpoint_to_string,
    resolve_checkpoint,
)
from oplog_connector.transform.compiler import compile_transform

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="oplog", help="MongoDB oplog connector CLI")


def _load(config_path: str) -> ConnectorConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    return load_connector_config(path)


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to connector YAML"),
) -> None:
    """Validate a connector config, its transform script and checkpoint."""
    try:
        cfg = _load(config_path)
        unit = compile_transform(cfg.script)
        checkpoint = resolve_checkpoint(cfg)
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc

    table = Table(title=f"Connector {cfg.namespace}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("server", cfg.server)
    table.add_row("namespace", cfg.namespace)
    table.add_row("source", cfg.source or "(none)")
    table.add_row("id_column", cfg.id_column)
    table.add_row("batch", f"{cfg.max_send_count} entries / {cfg.max_send_delay:g} ms")
    table.add_row("transform", "identity" if unit.source is None else "custom")
    table.add_row("projection", ", ".join(unit.projection) or "(all fields)")
    table.add_row("start after", checkpoint_to_string(checkpoint))
    console.print(table)
    console.print("[green]Valid[/green]")


@app.command()
def tail(
    config_path: str = typer.Argument(..., help="Path to connector YAML"),
    limit: int = typer.Option(0, "--limit", help="Stop after N envelopes (0 = never)"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Render logs as JSON"),
) -> None:
    """Print envelopes to the console as they are produced."""
    cfg = _load(config_path)
    configure_logging(json=json_logs)

    async def _tail() -> None:
        count = 0
        async with OplogConnector(cfg) as connector:
            async for envelope in connector:
                console.print_json(json_util.dumps(envelope.to_dict()))
                count += 1
                if limit and count >= limit:
                    break

    console.print(f"[yellow]Tailing:[/yellow] {cfg.server} {cfg.namespace}")
    try:
        asyncio.run(_tail())
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    except ConnectorError as exc:
        console.print(f"[red]Connector stopped:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def run(
    config_path: str = typer.Argument(..., help="Path to connector YAML"),
    webhook: str = typer.Option(..., "--webhook", help="URL receiving envelopes"),
    auth_token: str | None = typer.Option(
        None, "--auth-token", envvar="OPLOG_WEBHOOK_TOKEN", help="Bearer token"
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Render logs as JSON"),
) -> None:
    """Tail the oplog and deliver every envelope to a webhook."""
    cfg = _load(config_path)
    configure_logging(json=json_logs)
    sink = WebhookSink(WebhookSinkConfig(url=webhook, auth_token=auth_token))

    async def _run() -> None:
        await sink.start()
        try:
            async with OplogConnector(cfg) as connector:
                async for envelope in connector:
                    await sink.write(envelope)
        finally:
            await sink.flush()
            await sink.stop()

    console.print(f"[yellow]Delivering:[/yellow] {cfg.namespace} → {webhook}")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    except ConnectorError as exc:
        console.print(f"[red]Connector stopped:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        if sink.last_delivered is not None:
            console.print(f"last delivered checkpoint: {sink.last_delivered}")
