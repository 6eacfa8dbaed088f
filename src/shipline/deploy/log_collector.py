"""Structured run artifacts for shipline.

Every pipeline run produces a self-contained ``{output_dir}/{run_id}/``
directory that CI can upload as an artifact: a machine-readable
``summary.json``, one plain-text log per step with the exact (redacted)
commands and their output, and the compose logs of every service as they
were when the run ended.

Output Structure::

    {output_dir}/{run_id}/
    ├── summary.json
    ├── build.log
    ├── transfer.log
    ├── activate.log
    ├── maintain.log
    ├── health.log
    └── services/
        ├── app.log
        ├── db.log
        └── nginx.log

Related Modules:
    - :mod:`shipline.deploy.results` - models serialised by the collector
    - :mod:`shipline.deploy.workflow` - calls the collector after each run

Tags:
    logs, collector, artifacts, reporting, structured-output
"""

from __future__ import annotations

import logging
from pathlib import Path

from shipline.core.errors import ShiplineError
from shipline.deploy.compose import ComposeCommand
from shipline.deploy.executor import Executor
from shipline.deploy.results import DeploymentResult, PipelineResult, StepResult

logger = logging.getLogger(__name__)


class LogCollector:
    """Collects and structures logs from shipline runs.

    Parameters
    ----------
    output_dir
        Base directory for output.
    run_id
        Unique run identifier.
    """

    def __init__(self, output_dir: str | Path, run_id: str) -> None:
        self.run_dir = Path(output_dir) / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.run_id = run_id

    def services_dir(self) -> Path:
        """Get or create the directory for service logs."""
        d = self.run_dir / "services"
        d.mkdir(parents=True, exist_ok=True)
        return d

    # ------------------------------------------------------------------
    # Log capture
    # ------------------------------------------------------------------

    def write_step_log(self, step: StepResult) -> Path:
        """Write ``<step>.log`` with the step's commands and output."""
        path = self.run_dir / f"{step.name.value}.log"
        path.write_text(step.log_text, encoding="utf-8")
        return path

    def capture_service_logs(
        self,
        executor: Executor,
        compose: ComposeCommand,
        service: str,
        cwd: str | None = None,
        tail: int = 500,
    ) -> Path:
        """Save ``compose logs`` of one service to ``services/<service>.log``."""
        try:
            result = executor.run(compose.logs(service, tail=tail), check=False, cwd=cwd)
            logs = result.stdout + result.stderr
        except ShiplineError as exc:
            logs = f"Failed to collect logs: {exc.message}\n"

        log_path = self.services_dir() / f"{service}.log"
        log_path.write_text(logs, encoding="utf-8")
        logger.debug("logs.captured", extra={"service": service, "path": str(log_path)})
        return log_path

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def write_summary(self, result: PipelineResult | DeploymentResult) -> Path:
        """Write machine-readable summary JSON."""
        path = self.run_dir / "summary.json"
        path.write_text(result.model_dump_json(indent=2), encoding="utf-8")
        logger.info("summary.written", extra={"path": str(path)})
        return path


__all__ = ["LogCollector"]
