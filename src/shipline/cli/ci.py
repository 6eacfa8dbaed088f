"""
CLI: ``shipline ci`` - CI workflow generation.

Usage::

    shipline ci github                               # print to stdout
    shipline ci github --image shop --health-url https://shop.example.com/health -o .github/workflows/deploy.yml
"""

from __future__ import annotations

from pathlib import Path

import typer

from shipline.cli.utils import console
from shipline.deploy.ci import generate_github_workflow, write_workflow_file
from shipline.deploy.config import TransferMode

app = typer.Typer(no_args_is_help=True)


@app.callback()
def ci() -> None:
    """Generate CI workflows."""


@app.command("github")
def github(
    image: str = typer.Option("app", "--image", help="Image repository name."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch that triggers deployments."),
    python_version: str = typer.Option("3.11", "--python", help="Python version on the runner."),
    package: str = typer.Option("shipline", "--package", help="pip requirement for shipline."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="shipline.yml in the repository."),
    health_url: str | None = typer.Option(None, "--health-url", help="Health endpoint URL."),
    transfer_mode: TransferMode = typer.Option(TransferMode.ARCHIVE, "--transfer-mode", help="archive or registry."),
    auto_rollback: bool = typer.Option(False, "--auto-rollback", help="Roll back automatically on failure."),
    upload_logs: bool = typer.Option(True, "--upload-logs/--no-upload-logs", help="Upload run logs as an artifact."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout."),
) -> None:
    """Emit a GitHub Actions workflow that runs ``shipline deploy run`` on push."""
    content = generate_github_workflow(
        image=image,
        branch=branch,
        python_version=python_version,
        package=package,
        config_file=config_file,
        health_url=health_url,
        transfer_mode=transfer_mode,
        auto_rollback=auto_rollback,
        upload_logs=upload_logs,
    )
    if output is None:
        typer.echo(content, nl=False)
        return
    path = write_workflow_file(content, output)
    console.print(f"[green]✓ Wrote {path}[/]")
