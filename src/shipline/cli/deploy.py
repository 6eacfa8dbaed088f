"""
CLI: ``shipline deploy`` - pipeline and stack management commands.

Provides sub-commands for:
- Running the whole pipeline, or one step of it
- Rolling back to the previously deployed image
- Managing the deployed compose stack (up/down/restart/status/logs)
- Running commands in service containers (exec, artisan)

Usage::

    shipline deploy run                              # build -> ... -> health
    shipline deploy run --host 203.0.113.10 --user ubuntu --auto-rollback
    shipline deploy build --tag 1.4                  # one step only
    shipline deploy rollback

    shipline deploy up                               # compose up -d
    shipline deploy status --json
    shipline deploy logs app --tail 50
    shipline deploy exec app -- ls -la storage
    shipline deploy artisan key:generate --force
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from shipline.cli.utils import (
    console,
    fail,
    load_config,
    print_deployment_result,
    print_pipeline_result,
)
from shipline.deploy.config import DeploymentMode, PipelineConfig, TransferMode
from shipline.deploy.results import DeploymentResult, OverallStatus, StepName

app = typer.Typer(no_args_is_help=True)

PASSTHROUGH = {"allow_extra_args": True, "ignore_unknown_options": True}


# ── Shared options ───────────────────────────────────────────────────────

ConfigOpt = Annotated[Path | None, typer.Option("--config", "-c", help="YAML config file (shipline.yml).")]
HostOpt = Annotated[str | None, typer.Option("--host", "-H", help="Target host (SERVER_IP). Empty for local.")]
UserOpt = Annotated[str | None, typer.Option("--user", "-u", help="SSH user (SSH_USER).")]
PortOpt = Annotated[int | None, typer.Option("--port", help="SSH port.")]
KeyOpt = Annotated[str | None, typer.Option("--key", "-i", help="SSH private key file.")]
DeployDirOpt = Annotated[str | None, typer.Option("--deploy-dir", help="Directory on the host with the compose files.")]
ComposeFileOpt = Annotated[list[str] | None, typer.Option("--file", "-f", help="Compose file(s). Repeatable.")]
EnvFileOpt = Annotated[str | None, typer.Option("--env-file", help="Env file passed to compose.")]
ProjectOpt = Annotated[str | None, typer.Option("--project-name", "-p", help="Compose project name.")]
JsonOpt = Annotated[bool, typer.Option("--json", help="Output results as JSON.")]


def _stack_config(
    config_file: Path | None,
    host: str | None,
    user: str | None,
    port: int | None,
    key: str | None,
    deploy_dir: str | None,
    compose_file: list[str] | None,
    env_file: str | None,
    project: str | None,
) -> PipelineConfig:
    return load_config(
        config_file,
        host=host,
        user=user,
        port=port,
        key_path=key,
        deploy_dir=deploy_dir,
        compose_files=compose_file,
        env_file=env_file,
        project_name=project,
    )


# ── Pipeline ─────────────────────────────────────────────────────────────


def _run_pipeline(config: PipelineConfig, only: list[StepName] | None, json_out: bool) -> None:
    from shipline.deploy.workflow import DeploymentPipeline

    if not json_out:
        console.print(f"[bold]shipline deploy[/] · run_id: {config.run_id}")
        console.print(f"  image: {config.deployed_ref}  host: {config.host.display}")

    result = DeploymentPipeline(config).run(only=only)

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        print_pipeline_result(result)

    if result.exit_code:
        raise typer.Exit(code=1)


def _pipeline_command(name: str, only: list[StepName] | None, help_text: str) -> None:
    @app.command(name, help=help_text)
    def command(
        config_file: ConfigOpt = None,
        image: Annotated[str | None, typer.Option("--image", help="Image repository name.")] = None,
        tag: Annotated[str | None, typer.Option("--tag", "-t", help="Image tag.")] = None,
        dockerfile: Annotated[str | None, typer.Option("--dockerfile", help="Dockerfile path.")] = None,
        build_context: Annotated[str | None, typer.Option("--context", help="Build context.")] = None,
        transfer_mode: Annotated[
            TransferMode | None, typer.Option("--transfer-mode", help="archive or registry.")
        ] = None,
        host: HostOpt = None,
        user: UserOpt = None,
        port: PortOpt = None,
        key: KeyOpt = None,
        deploy_dir: DeployDirOpt = None,
        compose_file: ComposeFileOpt = None,
        env_file: EnvFileOpt = None,
        project: ProjectOpt = None,
        health_url: Annotated[str | None, typer.Option("--health-url", help="Health endpoint URL.")] = None,
        auto_rollback: Annotated[
            bool | None,
            typer.Option("--auto-rollback/--no-auto-rollback", help="Restore the previous image on failure."),
        ] = None,
        git_pull: Annotated[
            bool | None, typer.Option("--git-pull/--no-git-pull", help="git pull in the deploy dir first.")
        ] = None,
        pre_pull: Annotated[
            bool | None, typer.Option("--pre-pull/--no-pre-pull", help="compose pull before up.")
        ] = None,
        skip: Annotated[list[StepName] | None, typer.Option("--skip", help="Step(s) to skip. Repeatable.")] = None,
        output_dir: Annotated[Path | None, typer.Option("--output", "-o", help="Output directory.")] = None,
        json_out: JsonOpt = False,
    ) -> None:
        config = load_config(
            config_file,
            host=host,
            user=user,
            port=port,
            key_path=key,
            deploy_dir=deploy_dir,
            health_url=health_url,
            image=image,
            tag=tag,
            dockerfile=dockerfile,
            build_context=build_context,
            transfer_mode=transfer_mode,
            compose_files=compose_file,
            env_file=env_file,
            project_name=project,
            auto_rollback=auto_rollback,
            git_pull=git_pull,
            pre_pull=pre_pull,
            skip_steps=skip,
            output_dir=output_dir,
        )
        _run_pipeline(config, only, json_out)


_pipeline_command("run", None, "Run the full pipeline: build, transfer, activate, maintain, health.")
_pipeline_command("build", [StepName.BUILD], "Build the application image.")
_pipeline_command("transfer", [StepName.TRANSFER], "Ship the built image to the target host.")
_pipeline_command("activate", [StepName.ACTIVATE], "Replace the running stack and wait for it.")
_pipeline_command("maintain", [StepName.MAINTAIN], "Run maintenance commands in the app container.")
_pipeline_command("health", [StepName.HEALTH], "Probe the health endpoint.")


@app.command("rollback")
def rollback(
    config_file: ConfigOpt = None,
    image: Annotated[str | None, typer.Option("--image", help="Image repository name.")] = None,
    tag: Annotated[str | None, typer.Option("--tag", "-t", help="Deployed tag to restore.")] = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Restore the image that was deployed before the last deployment."""
    from shipline.deploy.workflow import DeploymentPipeline

    config = load_config(
        config_file,
        host=host,
        user=user,
        port=port,
        key_path=key,
        deploy_dir=deploy_dir,
        image=image,
        tag=tag,
        compose_files=compose_file,
        env_file=env_file,
        project_name=project,
    )
    if not json_out:
        console.print(f"[bold yellow]↺ rollback[/] {config.deployed_ref} on {config.host.display}")

    result = DeploymentPipeline(config).rollback()

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    elif result.rolled_back:
        console.print(f"[green]✓ Restored previous image of {config.deployed_ref}[/]")
    else:
        raise fail(result.error or "rollback failed")

    if not result.rolled_back:
        raise typer.Exit(code=1)


# ── Stack management ─────────────────────────────────────────────────────


def _finish(result: DeploymentResult, json_out: bool) -> None:
    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        print_deployment_result(result)
    if result.error or result.overall_status in (OverallStatus.FAILED, OverallStatus.PARTIAL):
        raise typer.Exit(code=1)


def _run_mode(
    config: PipelineConfig,
    mode: DeploymentMode,
    services: list[str] | None = None,
    tail: int = 200,
) -> DeploymentResult:
    from shipline.deploy.workflow import DeploymentRunner

    return DeploymentRunner(config).run(mode, services=services, tail=tail)


@app.command("up")
def deploy_up(
    services: Annotated[list[str] | None, typer.Argument(help="Service(s) to start. Default: all.")] = None,
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Start the stack (compose up -d)."""
    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    if not json_out:
        console.print(f"[bold green]▲ deploy up[/] · {config.host.display}")
    _finish(_run_mode(config, DeploymentMode.UP, services or None), json_out)


@app.command("down")
def deploy_down(
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Stop the stack (compose down)."""
    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    if not json_out:
        console.print(f"[bold red]▼ deploy down[/] · {config.host.display}")
    _finish(_run_mode(config, DeploymentMode.DOWN), json_out)


@app.command("restart")
def deploy_restart(
    services: Annotated[list[str] | None, typer.Argument(help="Service(s) to restart. Default: down + up.")] = None,
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Restart services, or the whole stack (down then up)."""
    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    if not json_out:
        console.print(f"[bold yellow]↻ deploy restart[/] · {config.host.display}")
    _finish(_run_mode(config, DeploymentMode.RESTART, services or None), json_out)


@app.command("status")
def deploy_status(
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Show the state of every service (compose ps)."""
    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    _finish(_run_mode(config, DeploymentMode.STATUS), json_out)


@app.command("logs")
def deploy_logs(
    service: Annotated[str | None, typer.Argument(help="Service name. Default: all.")] = None,
    tail: Annotated[int, typer.Option("--tail", "-n", help="Number of lines.")] = 200,
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Show logs from deployed services."""
    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    _finish(_run_mode(config, DeploymentMode.LOGS, [service] if service else None, tail=tail), json_out)


# ── Commands in containers ───────────────────────────────────────────────


@app.command("exec", context_settings=PASSTHROUGH)
def deploy_exec(
    service: Annotated[str, typer.Argument(help="Service to run the command in.")],
    command: Annotated[list[str], typer.Argument(help="Command and arguments.")],
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Run a command in a service container (compose exec -T)."""
    from shipline.deploy.workflow import DeploymentRunner

    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    _finish(DeploymentRunner(config).exec(service, list(command)), json_out)


@app.command("artisan", context_settings=PASSTHROUGH)
def deploy_artisan(
    args: Annotated[list[str], typer.Argument(help="Artisan command, e.g. migrate --force or key:generate.")],
    service: Annotated[str | None, typer.Option("--service", "-s", help="App service. Default: app_service.")] = None,
    config_file: ConfigOpt = None,
    host: HostOpt = None,
    user: UserOpt = None,
    port: PortOpt = None,
    key: KeyOpt = None,
    deploy_dir: DeployDirOpt = None,
    compose_file: ComposeFileOpt = None,
    env_file: EnvFileOpt = None,
    project: ProjectOpt = None,
    json_out: JsonOpt = False,
) -> None:
    """Run ``php artisan ...`` in the app container."""
    from shipline.deploy.workflow import DeploymentRunner

    config = _stack_config(config_file, host, user, port, key, deploy_dir, compose_file, env_file, project)
    target = service or config.app_service
    _finish(DeploymentRunner(config).exec(target, ["php", "artisan", *args]), json_out)
