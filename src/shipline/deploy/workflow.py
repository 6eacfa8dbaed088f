"""Orchestrators for shipline deployments.

Key Concepts:
    DeploymentPipeline: ``PipelineConfig`` -> ``PipelineResult``. Runs
        build, transfer, activate, maintain and health strictly in order,
        skipping configured steps; the first failing step stops the run.
        When activate, maintain or health fails and ``auto_rollback`` is
        set, the image snapshotted before the run is restored and the run
        ends ``ROLLED_BACK``. A run that snapshotted nothing never rolls
        back. State file problems become ``warnings`` on the result. The run summary and step logs are always
        written.
    DeploymentRunner: Ad-hoc ``docker compose`` operations on the target
        host (up, down, restart, status, logs, exec) returning
        ``DeploymentResult``.

Architecture Decisions:
    - Sequential only: each step depends on the previous one's side
      effects on the target host.
    - Snapshot before the first image-changing step: the deployed tag is
      tagged ``shipline-previous`` right before the step that can replace
      it (build on a local target, transfer on a remote one), so a
      partial run never overwrites the snapshot of a good release.
    - Log collection and summary in ``finally``: artifacts exist even when
      a step raised something unexpected.

Related Modules:
    - :mod:`shipline.deploy.steps` - the step implementations
    - :mod:`shipline.deploy.rollback` - snapshot and restore
    - :mod:`shipline.deploy.log_collector` - run artifacts

Tags:
    workflow, orchestration, pipeline, deployment, rollback, runner
"""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx

from shipline.core.errors import ShiplineError
from shipline.core.logging import LogContext, get_logger
from shipline.deploy.compose import ComposeCommand, parse_ps_output
from shipline.deploy.config import DeploymentMode, PipelineConfig, TransferMode
from shipline.deploy.executor import Executor, SSHExecutor
from shipline.deploy.log_collector import LogCollector
from shipline.deploy.results import (
    ROLLBACK_TRIGGERS,
    DeploymentResult,
    OverallStatus,
    PipelineResult,
    ServiceStatus,
    StepName,
    StepResult,
)
from shipline.deploy.state import ReleaseRecord
from shipline.deploy.steps import (
    PIPELINE_STEPS,
    PipelineContext,
    PipelineStep,
    RollbackStep,
    make_remote_executor,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Deployment pipeline
# ---------------------------------------------------------------------------


class DeploymentPipeline:
    """Runs the deployment pipeline for one configuration.

    Parameters
    ----------
    config
        Pipeline configuration.
    local, remote
        Executors for this machine and the target host; built from
        ``config`` when omitted.
    health_client
        httpx client for the health step.
    sleep
        Delay function used while polling.

    Example::

        config = PipelineConfig.from_env(image="my-laravel-app")
        result = DeploymentPipeline(config).run()
        raise SystemExit(result.exit_code)
    """

    def __init__(
        self,
        config: PipelineConfig,
        local: Executor | None = None,
        remote: Executor | None = None,
        health_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        steps: list[type[PipelineStep]] | None = None,
    ) -> None:
        self.config = config
        self._local = local
        self._remote = remote
        self._health_client = health_client
        self._sleep = sleep
        self.steps = steps or list(PIPELINE_STEPS)

    def _context(self) -> PipelineContext:
        return PipelineContext.create(
            self.config,
            local=self._local,
            remote=self._remote,
            health_client=self._health_client,
            sleep=self._sleep,
        )

    def _image_changing_steps(self) -> set[StepName]:
        steps = {StepName.TRANSFER}
        if self.config.host.is_local:
            steps.add(StepName.BUILD)
        if self.config.pre_pull:
            steps.add(StepName.ACTIVATE)
        return steps

    def run(self, only: list[StepName] | None = None) -> PipelineResult:
        """Execute the pipeline.

        Parameters
        ----------
        only
            Run just these steps (others are recorded as SKIPPED).

        Returns
        -------
        PipelineResult
            Always returned; inspect ``overall_status`` / ``exit_code``.
        """
        config = self.config
        context = self._context()
        result = context.result
        collector = LogCollector(config.output_dir, config.run_id)

        with LogContext(run_id=config.run_id, project=config.project):
            logger.info(
                "pipeline.started",
                host=config.host.display,
                image=config.deployed_ref,
                transfer_mode=config.transfer_mode.value,
            )
            snapshotted = False
            try:
                for step_cls in self.steps:
                    step = step_cls()
                    if not config.should_run(step.name) or (only and step.name not in only):
                        result.steps.append(_skipped(step.name, "not selected for this run"))
                        continue

                    if not snapshotted and step.name in self._image_changing_steps():
                        self._snapshot(context)
                        snapshotted = True

                    step_result = step.run(context)
                    result.steps.append(step_result)
                    collector.write_step_log(step_result)
                    if not step_result.ok:
                        result.failed_step = step.name
                        result.error = step_result.error
                        break

                if result.failed_step is not None:
                    self._handle_failure(context, collector)
                else:
                    self._record_success(context)
            finally:
                self._collect_service_logs(context, collector)
                result.mark_complete()
                collector.write_summary(result)
                context.close()

            logger.info(
                "pipeline.complete",
                status=result.overall_status.value,
                summary=result.summary,
            )
        return result

    def rollback(self) -> PipelineResult:
        """Restore the previously deployed image without deploying."""
        config = self.config
        context = self._context()
        result = context.result
        collector = LogCollector(config.output_dir, config.run_id)

        with LogContext(run_id=config.run_id, project=config.project):
            try:
                step_result = RollbackStep().run(context)
                result.steps.append(step_result)
                collector.write_step_log(step_result)
                if not step_result.ok:
                    result.failed_step = StepName.ROLLBACK
                    result.error = step_result.error
            finally:
                result.mark_complete()
                collector.write_summary(result)
                context.close()
        return result

    # ------------------------------------------------------------------
    # Private methods
    # ------------------------------------------------------------------

    def _snapshot(self, context: PipelineContext) -> None:
        config = self.config
        try:
            context.result.previous_image_id = context.rollback.snapshot(
                config.deployed_ref, service=config.app_service,
            )
        except ShiplineError as exc:
            context.result.previous_image_id = None
            logger.warning("rollback.snapshot_failed", error=exc.message)
            context.result.warnings.append(f"snapshot failed: {exc.message}")

    def _handle_failure(self, context: PipelineContext, collector: LogCollector) -> None:
        config = self.config
        result = context.result
        failed_step = result.failed_step
        if failed_step is None:
            return

        if config.auto_rollback and failed_step in ROLLBACK_TRIGGERS:
            logger.warning("pipeline.rolling_back", failed_step=failed_step.value)
            step_result = RollbackStep(require_snapshot=True).run(context)
            result.steps.append(step_result)
            collector.write_step_log(step_result)

        try:
            context.state.mark_failed(
                config.run_id, config.deployed_ref, result.error or "failed", host=config.host.display,
            )
        except ShiplineError as exc:
            self._state_warning(context, exc)

    def _record_success(self, context: PipelineContext) -> None:
        activate = context.result.step(StepName.ACTIVATE)
        if activate is None or activate.status != OverallStatus.PASSED:
            return
        config = self.config
        try:
            image_id = context.result.new_image_id
            if config.transfer_mode == TransferMode.REGISTRY or image_id is None:
                image_id = context.target.image_id(config.deployed_ref)
            context.state.record_release(
                ReleaseRecord(
                    run_id=config.run_id,
                    image_ref=config.deployed_ref,
                    image_id=image_id,
                    host=config.host.display,
                )
            )
        except ShiplineError as exc:
            self._state_warning(context, exc)

    @staticmethod
    def _state_warning(context: PipelineContext, exc: ShiplineError) -> None:
        logger.warning("state.not_saved", error=exc.message)
        context.result.warnings.append(f"release state not saved: {exc.message}")

    def _collect_service_logs(self, context: PipelineContext, collector: LogCollector) -> None:
        if not self.config.collect_service_logs:
            return
        activate = context.result.step(StepName.ACTIVATE)
        if activate is None or activate.status == OverallStatus.SKIPPED:
            return
        for service in context.result.services:
            collector.capture_service_logs(
                context.remote, context.compose, service.name, cwd=context.workdir,
            )


def _skipped(name: StepName, reason: str) -> StepResult:
    result = StepResult(name=name)
    result.output["skipped"] = reason
    result.mark_complete(OverallStatus.SKIPPED)
    return result


# ---------------------------------------------------------------------------
# Deployment Runner (ad-hoc compose operations)
# ---------------------------------------------------------------------------


class DeploymentRunner:
    """Runs ``docker compose`` operations against the deployed stack.

    Parameters
    ----------
    config
        Pipeline configuration (host, compose files, project name).
    remote
        Executor for the target host; built from ``config`` when omitted.
    """

    def __init__(self, config: PipelineConfig, remote: Executor | None = None) -> None:
        self.config = config
        self._remote = remote
        self.compose = ComposeCommand(
            files=list(config.compose_files),
            project_name=config.project_name,
            env_file=config.env_file,
            command=config.compose_command,
        )

    @property
    def workdir(self) -> str | None:
        return None if self.config.host.is_local else self.config.host.deploy_dir

    def run(
        self,
        mode: DeploymentMode,
        services: list[str] | None = None,
        tail: int = 200,
    ) -> DeploymentResult:
        """Execute one compose operation."""
        result = DeploymentResult(
            run_id=self.config.run_id,
            mode=mode.value,
            host=self.config.host.display,
            compose_files=list(self.config.compose_files),
        )
        remote = self._remote or make_remote_executor(self.config)
        try:
            if mode == DeploymentMode.UP:
                self._deploy_up(remote, result, services)
            elif mode == DeploymentMode.DOWN:
                self._deploy_down(remote, result)
            elif mode == DeploymentMode.RESTART:
                if services:
                    remote.run(self.compose.restart(services), cwd=self.workdir)
                else:
                    self._deploy_down(remote, result)
                    remote.run(
                        self.compose.up(remove_orphans=self.config.remove_orphans),
                        cwd=self.workdir,
                    )
                self._check_status(remote, result)
            elif mode == DeploymentMode.STATUS:
                self._check_status(remote, result)
            elif mode == DeploymentMode.LOGS:
                service = services[0] if services else None
                out = remote.run(self.compose.logs(service, tail=tail), cwd=self.workdir)
                result.output = out.stdout + out.stderr
        except ShiplineError as exc:
            result.error = exc.message
            logger.error("compose.failed", mode=mode.value, **exc.to_dict())
        finally:
            if self._remote is None and isinstance(remote, SSHExecutor):
                remote.close()

        result.mark_complete()
        return result

    def exec(self, service: str, command: list[str] | str) -> DeploymentResult:
        """Run a command in a service container (``compose exec -T``)."""
        result = DeploymentResult(
            run_id=self.config.run_id,
            mode="exec",
            host=self.config.host.display,
            compose_files=list(self.config.compose_files),
        )
        remote = self._remote or make_remote_executor(self.config)
        try:
            out = remote.run(self.compose.exec(service, command), cwd=self.workdir, check=False)
            result.output = out.stdout + out.stderr
            if not out.ok:
                result.error = f"Command exited with status {out.exit_code}"
        except ShiplineError as exc:
            result.error = exc.message
        finally:
            if self._remote is None and isinstance(remote, SSHExecutor):
                remote.close()
        result.mark_complete()
        return result

    def _deploy_up(self, remote: Executor, result: DeploymentResult, services: list[str] | None) -> None:
        remote.run(
            self.compose.up(remove_orphans=self.config.remove_orphans, services=services),
            cwd=self.workdir,
        )
        self._check_status(remote, result)

    def _deploy_down(self, remote: Executor, result: DeploymentResult) -> None:
        out = remote.run(
            self.compose.down(remove_orphans=self.config.remove_orphans), cwd=self.workdir,
        )
        result.output += out.stderr

    def _check_status(self, remote: Executor, result: DeploymentResult) -> None:
        out = remote.run(self.compose.ps(), cwd=self.workdir)
        result.services = [
            ServiceStatus(
                name=row["service"],
                container_id=row["container_id"] or None,
                container_name=row["name"] or None,
                image=row["image"] or None,
                status=row["status"],  # type: ignore[arg-type]
            )
            for row in parse_ps_output(out.stdout)
        ]


__all__ = ["DeploymentPipeline", "DeploymentRunner"]
