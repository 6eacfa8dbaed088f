"""
CLI: ``shipline compose`` - validate and render compose files.

Usage::

    shipline compose validate                       # ./docker-compose.yml + ./.env
    shipline compose validate -f prod.yml --env-file .env.prod --json
    shipline compose render --prefix shop -o docker-compose.yml
    shipline compose services                       # reference stack registry
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.table import Table

from shipline.cli.utils import console, err_console, fail
from shipline.core.errors import ShiplineError
from shipline.deploy.compose import (
    DEFAULT_COMPOSE_FILE,
    LARAVEL_STACK,
    generate_stack_compose,
    load_compose_project,
    write_compose_file,
)

app = typer.Typer(no_args_is_help=True)


@app.command("validate")
def validate(
    compose_file: Path = typer.Option(Path(DEFAULT_COMPOSE_FILE), "--file", "-f", help="Compose file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Env file. Default: .env beside the compose file."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Parse a compose file with its .env and report what would break ``up``."""
    try:
        project = load_compose_project(compose_file, env_file=env_file)
    except ShiplineError as exc:
        raise fail(exc.message) from exc

    problems = project.problems()

    if json_out:
        payload = {
            "path": str(project.path),
            "services": [svc.to_dict() for svc in project.services.values()],
            "missing_variables": project.missing_variables,
            "problems": problems,
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        table = Table(title=f"{project.path}")
        table.add_column("Service", style="bold cyan")
        table.add_column("Image / build")
        table.add_column("Ports")
        table.add_column("Depends on")
        for svc in project.services.values():
            source = svc.image or f"build: {(svc.build or {}).get('context', '.')}"
            table.add_row(
                svc.name,
                source,
                ", ".join(svc.ports) or "—",
                ", ".join(svc.depends_on) or "—",
            )
        console.print(table)
        if problems:
            for problem in problems:
                err_console.print(f"[red]✗[/] {problem}")
        else:
            console.print(f"[green]✓ valid[/] · startup order: {' → '.join(project.startup_order())}")

    if problems:
        raise typer.Exit(code=1)


@app.command("render")
def render(
    prefix: str = typer.Option("app", "--prefix", help="Container, network and volume prefix."),
    service: list[str] = typer.Option([], "--service", "-s", help="Service(s) to include. Default: all."),
    app_image: str | None = typer.Option(None, "--app-image", help="Image reference for the app service."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout."),
) -> None:
    """Render the reference Laravel stack compose file."""
    try:
        content = generate_stack_compose(prefix=prefix, services=service or None, app_image=app_image)
    except ValueError as exc:
        raise fail(str(exc)) from exc

    if output is None:
        typer.echo(content, nl=False)
        return
    path = write_compose_file(content, output)
    console.print(f"[green]✓ Wrote {path}[/]")


@app.command("services")
def list_services(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List the services of the reference stack."""
    if json_out:
        out = {
            name: {
                "category": spec.category,
                "image": spec.image or "(built)",
                "ports": [f"${{{var}}}:{port}" for var, port in spec.ports],
                "depends_on": list(spec.depends_on),
                "description": spec.description,
            }
            for name, spec in LARAVEL_STACK.items()
        }
        typer.echo(json.dumps(out, indent=2))
        return

    table = Table(title="Reference Stack Services")
    table.add_column("Name", style="bold cyan")
    table.add_column("Category")
    table.add_column("Image")
    table.add_column("Ports")
    table.add_column("Depends on")

    for name, spec in LARAVEL_STACK.items():
        table.add_row(
            name,
            spec.category,
            spec.image or "(built)",
            ", ".join(f"${{{var}}}:{port}" for var, port in spec.ports) or "—",
            ", ".join(spec.depends_on) or "—",
        )

    console.print(table)
