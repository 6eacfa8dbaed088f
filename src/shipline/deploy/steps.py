"""Pipeline steps: build, transfer, activate, maintain, health.

Each step is a small class with ``execute(context, result)``. The shared
``PipelineStep.run()`` wraps it: it times the step, records every command
the step's executors run (redacted argv, exit code, output tail) on the
``StepResult``, and turns a raised ``ShiplineError`` into a FAILED step
(anything else into ERROR) instead of letting it escape. The pipeline then
decides whether to stop or roll back.

Step sequence (mirrors the CI workflow)::

    build      docker build -t <image:tag> [-f Dockerfile] <context>
    transfer   archive:  docker save | gzip > x.tar.gz, scp, gunzip | docker load
               registry: docker login, docker push; remote login, docker pull
    activate   [git pull] [compose pull] compose down, compose up -d,
               wait until every declared service is running
    maintain   compose exec -T app php artisan migrate --force (etc.)
    health     GET <health url>, retried with backoff

Tags:
    pipeline, steps, build, transfer, activate, maintenance, health
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from shipline.core.errors import (
    ActivationError,
    HealthCheckError,
    MissingConfigError,
    RollbackError,
    ShiplineError,
)
from shipline.core.logging import get_logger
from shipline.core.settings import get_settings
from shipline.deploy.compose import ComposeCommand, parse_ps_output
from shipline.deploy.config import PipelineConfig, TransferMode
from shipline.deploy.container import ContainerManager
from shipline.deploy.executor import CommandResult, Executor, LocalExecutor, SSHExecutor
from shipline.deploy.health import HealthChecker
from shipline.deploy.results import (
    CommandRecord,
    OverallStatus,
    PipelineResult,
    ServiceStatus,
    StepName,
    StepResult,
)
from shipline.deploy.rollback import RollbackManager, previous_ref
from shipline.deploy.state import StateStore

logger = get_logger(__name__)

OUTPUT_TAIL_CHARS = 8000


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def make_remote_executor(config: PipelineConfig) -> Executor:
    """Executor for the target host described by ``config.host``."""
    settings = get_settings()
    host = config.host
    if host.is_local:
        return LocalExecutor(timeout=config.command_timeout_seconds)
    kwargs: dict[str, Any] = {
        "port": host.port,
        "ssh_bin": settings.ssh_bin,
        "scp_bin": settings.scp_bin,
        "timeout": config.command_timeout_seconds,
    }
    if host.key_material is not None:
        return SSHExecutor.from_key_material(
            host.host, host.user, host.key_material.get_secret_value(), **kwargs
        )
    return SSHExecutor(host.host, host.user, key_path=host.key_path, **kwargs)


@dataclass
class PipelineContext:
    """Everything the steps of one run share."""

    config: PipelineConfig
    local: Executor
    remote: Executor
    builder: ContainerManager
    target: ContainerManager
    compose: ComposeCommand
    state: StateStore
    rollback: RollbackManager
    result: PipelineResult
    health_client: httpx.Client | None = None
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def create(
        cls,
        config: PipelineConfig,
        local: Executor | None = None,
        remote: Executor | None = None,
        health_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> PipelineContext:
        local = local or LocalExecutor(timeout=config.command_timeout_seconds)
        remote = remote or make_remote_executor(config)
        builder = ContainerManager(local, docker_bin=config.docker_bin)
        target = builder if remote is local else ContainerManager(remote, docker_bin=config.docker_bin)
        compose = ComposeCommand(
            files=list(config.compose_files),
            project_name=config.project_name,
            env_file=config.env_file,
            command=config.compose_command,
        )
        state = StateStore(config.state_dir, config.project)
        workdir = None if config.host.is_local else config.host.deploy_dir
        return cls(
            config=config,
            local=local,
            remote=remote,
            builder=builder,
            target=target,
            compose=compose,
            state=state,
            rollback=RollbackManager(
                target, compose, state, deploy_dir=workdir, remove_orphans=config.remove_orphans,
            ),
            result=PipelineResult(
                run_id=config.run_id,
                project=config.project,
                host=config.host.display,
                image=config.deployed_ref,
            ),
            health_client=health_client,
            sleep=sleep,
        )

    @property
    def workdir(self) -> str | None:
        """Directory compose commands run in on the target host."""
        return None if self.config.host.is_local else self.config.host.deploy_dir

    @property
    def executors(self) -> list[Executor]:
        return [self.local] if self.remote is self.local else [self.local, self.remote]

    def close(self) -> None:
        if isinstance(self.remote, SSHExecutor):
            self.remote.close()


# ---------------------------------------------------------------------------
# Step base
# ---------------------------------------------------------------------------


def _tail(text: str) -> str:
    return text if len(text) <= OUTPUT_TAIL_CHARS else text[-OUTPUT_TAIL_CHARS:]


class PipelineStep(ABC):
    """Base class for pipeline steps."""

    name: StepName

    def run(self, context: PipelineContext) -> StepResult:
        """Execute the step and return its result. Never raises."""
        result = StepResult(name=self.name, status=OverallStatus.RUNNING)

        def record(cmd: CommandResult) -> None:
            result.commands.append(
                CommandRecord(
                    command=cmd.display,
                    host=cmd.host,
                    exit_code=cmd.exit_code,
                    duration_seconds=cmd.duration_seconds,
                    stdout=_tail(cmd.stdout),
                    stderr=_tail(cmd.stderr),
                )
            )

        for executor in context.executors:
            executor.add_observer(record)

        logger.info("step.started", step=self.name.value)
        try:
            self.execute(context, result)
        except ShiplineError as exc:
            exc.with_context(step=self.name.value, run_id=context.config.run_id)
            result.error = exc.message
            result.error_details = exc.to_dict()
            result.mark_complete(OverallStatus.FAILED)
            logger.error("step.failed", step=self.name.value, **exc.to_dict())
        except Exception as exc:  # noqa: BLE001
            result.error = f"{type(exc).__name__}: {exc}"
            result.mark_complete(OverallStatus.ERROR)
            logger.exception("step.error", step=self.name.value)
        else:
            if result.status == OverallStatus.RUNNING:
                result.mark_complete()
            logger.info(
                "step.completed",
                step=self.name.value,
                status=result.status.value,
                duration_seconds=round(result.duration_seconds, 2),
            )
        finally:
            for executor in context.executors:
                executor.remove_observer(record)
        return result

    @abstractmethod
    def execute(self, context: PipelineContext, result: StepResult) -> None:
        """Do the work; raise ``ShiplineError`` on failure."""

    @staticmethod
    def skip(result: StepResult, reason: str) -> None:
        result.output["skipped"] = reason
        result.mark_complete(OverallStatus.SKIPPED)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class BuildStep(PipelineStep):
    """``docker build`` the application image on this machine."""

    name = StepName.BUILD

    def execute(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        image_id = context.builder.build(
            context=config.build_context,
            tag=config.image_ref,
            dockerfile=config.dockerfile,
            build_args=config.build_args,
            pull=config.build_pull,
        )
        context.result.new_image_id = image_id
        result.output.update({"image": config.image_ref, "image_id": image_id})


class TransferStep(PipelineStep):
    """Ship the built image to the target host (archive or registry)."""

    name = StepName.TRANSFER

    def execute(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        result.output["mode"] = config.transfer_mode.value
        if config.transfer_mode == TransferMode.REGISTRY:
            self._via_registry(context, result)
        elif context.remote is context.local:
            self.skip(result, "image was built on the target host")
        else:
            self._via_archive(context, result)

    def _via_archive(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        local_archive = str(config.local_archive)
        remote_archive = config.remote_archive

        context.builder.save_archive(config.image_ref, local_archive)
        context.remote.put(local_archive, remote_archive)
        loaded = context.target.load_archive(remote_archive)
        if not config.keep_archive:
            context.remote.run(["rm", "-f", remote_archive], check=False)

        result.output.update({
            "archive": local_archive,
            "remote_archive": remote_archive,
            "loaded": loaded,
        })

    def _via_registry(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        registry = config.registry
        if registry is None:
            raise MissingConfigError("registry", "Registry transfer mode needs a registry URL")
        ref = config.deployed_ref
        password = registry.password.get_secret_value() if registry.password else None

        if registry.username and password:
            context.builder.login(registry.url, registry.username, password)
        if ref != config.image_ref:
            context.builder.tag(config.image_ref, ref)
        context.builder.push(ref)

        if context.target is not context.builder:
            if registry.username and password:
                context.target.login(registry.url, registry.username, password)
            image_id = context.target.pull(ref)
            result.output["remote_image_id"] = image_id
        result.output["image"] = ref


class ActivateStep(PipelineStep):
    """Replace the running stack: ``compose down`` then ``compose up -d``."""

    name = StepName.ACTIVATE

    def execute(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        run = context.remote.run
        cwd = context.workdir

        if config.git_pull:
            run(["git", "pull", "--ff-only"], cwd=cwd)
        if config.pre_pull:
            run(context.compose.pull(), cwd=cwd)
        run(context.compose.down(remove_orphans=config.remove_orphans), cwd=cwd)
        run(context.compose.up(remove_orphans=config.remove_orphans), cwd=cwd)

        services = self.wait_for_services(context)
        context.result.services = services
        result.output["services"] = {s.name: s.status for s in services}

    @staticmethod
    def declared_services(context: PipelineContext) -> list[str]:
        out = context.remote.run(context.compose.services(), cwd=context.workdir).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    @staticmethod
    def service_statuses(context: PipelineContext, declared: list[str]) -> list[ServiceStatus]:
        rows = parse_ps_output(
            context.remote.run(context.compose.ps(), cwd=context.workdir).stdout
        )
        statuses = []
        for name in declared:
            row = next((r for r in rows if r["service"] == name), None)
            if row is None:
                # compose v1 tables only carry container names: <project>_<service>_<n>
                pattern = re.compile(rf"(^|[_-]){re.escape(name)}([_-]\d+)?$")
                row = next((r for r in rows if pattern.search(r["name"])), None)
            if row is None:
                statuses.append(ServiceStatus(name=name, status="not_found"))
                continue
            statuses.append(
                ServiceStatus(
                    name=name,
                    container_id=row["container_id"] or None,
                    container_name=row["name"] or None,
                    image=row["image"] or None,
                    status=row["status"],  # type: ignore[arg-type]
                )
            )
        return statuses

    def wait_for_services(self, context: PipelineContext) -> list[ServiceStatus]:
        """Poll ``compose ps`` until every declared service is up.

        Backoff: 1s, 2s, 4s, capped at 10s, for ``activate_timeout_seconds``.
        """
        declared = self.declared_services(context)
        timeout = context.config.activate_timeout_seconds
        waited = 0.0
        delay = 1.0
        while True:
            statuses = self.service_statuses(context, declared)
            down = [s for s in statuses if not s.is_up]
            if not down:
                return statuses
            if waited >= timeout:
                context.result.services = statuses
                detail = ", ".join(f"{s.name}={s.status}" for s in down)
                raise ActivationError(
                    f"Services not running after {timeout}s: {detail}"
                ).with_context(service=down[0].name, host=context.remote.host)
            logger.info("activate.waiting", pending=[s.name for s in down], delay=delay)
            context.sleep(delay)
            waited += delay
            delay = min(delay * 2, 10.0)


class MaintenanceStep(PipelineStep):
    """Run maintenance commands inside the app container."""

    name = StepName.MAINTAIN

    def execute(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        if not config.maintenance_commands:
            self.skip(result, "no maintenance commands configured")
            return
        done = []
        for command in config.maintenance_commands:
            context.remote.run(
                context.compose.exec(config.app_service, command),
                cwd=context.workdir,
            )
            done.append(command)
        result.output["commands"] = done


class HealthStep(PipelineStep):
    """Probe the health endpoint until healthy or out of retries."""

    name = StepName.HEALTH

    def execute(self, context: PipelineContext, result: StepResult) -> None:
        health = context.config.health
        if not health.url:
            self.skip(result, "no health check URL configured")
            return
        with HealthChecker(health, client=context.health_client, sleep=context.sleep) as checker:
            try:
                report = checker.check()
            except HealthCheckError as exc:
                context.result.health = exc.report
                raise
        context.result.health = report
        result.output.update({"status": report.status, "checks": report.checks, "attempts": report.attempts})


class RollbackStep(PipelineStep):
    """Restore the image snapshotted before this deployment."""

    name = StepName.ROLLBACK

    def __init__(self, require_snapshot: bool = False) -> None:
        self.require_snapshot = require_snapshot

    def execute(self, context: PipelineContext, result: StepResult) -> None:
        config = context.config
        expected = None
        if self.require_snapshot:
            expected = context.result.previous_image_id
            if expected is None:
                raise RollbackError(
                    f"No image was snapshotted before this run; not restoring {previous_ref(config.deployed_ref)}"
                )
        record = context.rollback.rollback(config.deployed_ref, config.run_id, expected_image_id=expected)
        context.result.rolled_back = True
        result.output.update({"image": record.image_ref, "image_id": record.image_id})


PIPELINE_STEPS: list[type[PipelineStep]] = [
    BuildStep,
    TransferStep,
    ActivateStep,
    MaintenanceStep,
    HealthStep,
]


__all__ = [
    "PIPELINE_STEPS",
    "ActivateStep",
    "BuildStep",
    "HealthStep",
    "MaintenanceStep",
    "PipelineContext",
    "PipelineStep",
    "RollbackStep",
    "TransferStep",
    "make_remote_executor",
]
