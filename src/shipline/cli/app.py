"""
Root Typer application for the shipline CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from shipline import __version__
from shipline.core.logging import configure_logging
from shipline.core.settings import get_settings

app = Typer(
    name="shipline",
    help="shipline: build, ship, activate and verify Docker Compose deployments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"shipline {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override SHIPLINE_LOG_LEVEL."),
) -> None:
    """shipline CLI: run deployments, manage the compose stack, generate CI."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.json_logs)


# ── Sub-command registration ─────────────────────────────────────────────

from shipline.cli.ci import app as ci_app  # noqa: E402
from shipline.cli.compose import app as compose_app  # noqa: E402
from shipline.cli.config import app as config_app  # noqa: E402
from shipline.cli.deploy import app as deploy_app  # noqa: E402

app.add_typer(deploy_app, name="deploy", help="Run the pipeline and manage the deployed stack.")
app.add_typer(compose_app, name="compose", help="Validate and render compose files.")
app.add_typer(ci_app, name="ci", help="Generate CI workflows.")
app.add_typer(config_app, name="config", help="Configuration inspection.")
