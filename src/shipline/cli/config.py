"""
CLI: ``shipline config`` - configuration inspection.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.table import Table

from shipline.cli.utils import console, load_config
from shipline.core.settings import get_settings

app = typer.Typer(no_args_is_help=True)


@app.callback()
def config() -> None:
    """Configuration inspection."""


@app.command("show")
def show_config(
    config_file: Path | None = typer.Option(None, "--config", "-c", help="YAML config file (shipline.yml)."),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
) -> None:
    """Show tool settings and the resolved pipeline configuration (secrets masked)."""
    settings = get_settings()
    config = load_config(config_file)
    pipeline = config.to_safe_dict()

    if format == "json":
        payload = {"settings": settings.model_dump(mode="json"), "pipeline": pipeline}
        typer.echo(json.dumps(payload, indent=2))
        return

    table = Table(title="Settings (SHIPLINE_*)")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in settings.model_dump(mode="json").items():
        table.add_row(key, str(value))
    console.print(table)

    table = Table(title="Pipeline")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("image", config.deployed_ref)
    table.add_row("transfer", config.transfer_mode.value)
    table.add_row("host", config.host.display)
    table.add_row("deploy dir", config.host.deploy_dir)
    table.add_row("compose files", ", ".join(config.compose_files))
    table.add_row("app service", config.app_service)
    table.add_row("maintenance", "\n".join(config.maintenance_commands) or "—")
    table.add_row("health url", config.health.url or "—")
    table.add_row("auto rollback", str(config.auto_rollback))
    table.add_row("skip", ", ".join(s.value for s in config.skip_steps) or "—")
    console.print(table)
