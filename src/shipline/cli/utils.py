"""
CLI utility helpers: config loading and output formatting.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from shipline.core.errors import ShiplineError
from shipline.deploy.config import PipelineConfig
from shipline.deploy.results import DeploymentResult, OverallStatus, PipelineResult

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    OverallStatus.PASSED: "green",
    OverallStatus.FAILED: "red",
    OverallStatus.PARTIAL: "yellow",
    OverallStatus.ERROR: "red bold",
    OverallStatus.SKIPPED: "dim",
    OverallStatus.ROLLED_BACK: "yellow bold",
}


# ── Config loading ───────────────────────────────────────────────────────


def fail(message: str) -> typer.Exit:
    """Print *message* in red and return the exit to raise."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    return typer.Exit(code=1)


def load_config(
    config_file: Path | None = None,
    *,
    host: str | None = None,
    user: str | None = None,
    port: int | None = None,
    key_path: str | None = None,
    deploy_dir: str | None = None,
    health_url: str | None = None,
    **overrides: Any,
) -> PipelineConfig:
    """Build a ``PipelineConfig`` from CLI options, a YAML file and the environment.

    Options left at ``None`` (or empty lists) fall through to the lower
    layers.
    """
    host_values = {
        "host": host, "user": user, "port": port, "key_path": key_path, "deploy_dir": deploy_dir,
    }
    nested: dict[str, Any] = {k: v for k, v in overrides.items() if v not in (None, [])}
    host_values = {k: v for k, v in host_values.items() if v is not None}
    if host_values:
        nested["host"] = host_values
    if health_url:
        nested["health"] = {"url": health_url}

    try:
        if config_file is not None:
            return PipelineConfig.from_file(config_file, **nested)
        return PipelineConfig.from_env(**nested)
    except ShiplineError as exc:
        raise fail(exc.message) from exc


# ── Output formatters ────────────────────────────────────────────────────


def _styled(status: OverallStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def print_pipeline_result(result: PipelineResult) -> None:
    """Pretty-print a PipelineResult."""
    table = Table(title=f"Deployment {result.run_id}")
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Commands", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Detail")

    for step in result.steps:
        detail = step.error or step.output.get("skipped", "")
        table.add_row(
            step.name.value,
            _styled(step.status),
            str(len(step.commands)),
            f"{step.duration_seconds:.1f}s",
            str(detail)[:80],
        )
    console.print(table)

    if result.services:
        print_services(result.services)
    if result.health is not None:
        health = result.health
        colour = "green" if health.ok else "red"
        console.print(f"Health: [{colour}]{health.summary}[/{colour}]")
    for warning in result.warnings:
        err_console.print(f"[yellow]![/] {warning}")

    console.print(f"\n{_styled(result.overall_status)}  {result.summary}")


def print_services(services: list[Any]) -> None:
    table = Table(title="Services")
    table.add_column("Service", style="bold cyan")
    table.add_column("Status")
    table.add_column("Container")
    table.add_column("Image")
    for svc in services:
        style = "green" if svc.is_up else "red"
        table.add_row(
            svc.name,
            f"[{style}]{svc.status}[/{style}]",
            svc.container_name or "—",
            svc.image or "—",
        )
    console.print(table)


def print_deployment_result(result: DeploymentResult) -> None:
    """Pretty-print a DeploymentResult."""
    if result.services:
        print_services(result.services)
    if result.output and result.mode in ("logs", "exec"):
        console.print(result.output, markup=False, highlight=False, end="")
    if result.error:
        err_console.print(f"[red]✗ {result.error}[/]")
    elif result.mode not in ("logs", "exec"):
        console.print(f"{_styled(result.overall_status)}  {result.summary}")
