"""Deployment pipeline for Docker Compose hosted applications.

Key Concepts:
    PipelineConfig: Pydantic model for one deployment (image, transfer
        mode, target host, compose files, maintenance commands, health
        check, rollback policy).
    DeploymentPipeline: Orchestrator. Config in, ``PipelineResult`` out.
    DeploymentRunner: Ad-hoc ``docker compose`` up/down/restart/status/logs.
    ContainerManager: Subprocess-based docker CLI wrapper.
    ComposeProject / ComposeCommand: Compose file model and argv builder.
    HealthChecker: httpx probe of the ``{status, checks}`` endpoint.
    RollbackManager: Snapshot and restore of the deployed image.
    LogCollector: ``{run_id}/`` directories with a JSON summary and step logs.

Architecture::

    ┌──────────────────────────────────────────────────────────────┐
    │                     DeploymentPipeline                        │
    ├──────────┬───────────┬────────────┬────────────┬─────────────┤
    │  build   │ transfer  │  activate  │  maintain  │   health    │
    ├──────────┴───────────┴────────────┴────────────┴─────────────┤
    │  ContainerManager │ ComposeCommand │ HealthChecker │ Rollback │
    ├──────────────────────────────────────────────────────────────┤
    │        LocalExecutor / SSHExecutor (subprocess, ssh, scp)    │
    └──────────────────────────────────────────────────────────────┘

Tags:
    deploy, docker, compose, ssh, pipeline, health-check, rollback

Example:
    >>> from shipline.deploy import PipelineConfig
    >>> config = PipelineConfig(image="shop", tag="1.4")
    >>> config.image_ref
    'shop:1.4'
"""

from shipline.deploy.ci import generate_github_workflow, write_workflow_file
from shipline.deploy.compose import (
    LARAVEL_STACK,
    ComposeCommand,
    ComposeProject,
    ComposeService,
    ServiceSpec,
    generate_stack_compose,
    load_compose_project,
    write_compose_file,
)
from shipline.deploy.config import (
    DeploymentMode,
    HealthCheckConfig,
    PipelineConfig,
    RegistryConfig,
    RemoteHost,
    TransferMode,
)
from shipline.deploy.container import ContainerManager
from shipline.deploy.executor import CommandResult, Executor, LocalExecutor, SSHExecutor
from shipline.deploy.health import HealthChecker
from shipline.deploy.log_collector import LogCollector
from shipline.deploy.results import (
    DeploymentResult,
    HealthReport,
    OverallStatus,
    PipelineResult,
    ServiceStatus,
    StepName,
    StepResult,
)
from shipline.deploy.rollback import RollbackManager
from shipline.deploy.state import DeploymentState, ReleaseRecord, StateStore
from shipline.deploy.workflow import DeploymentPipeline, DeploymentRunner

__all__ = [
    "LARAVEL_STACK",
    "CommandResult",
    "ComposeCommand",
    "ComposeProject",
    "ComposeService",
    "ContainerManager",
    "DeploymentMode",
    "DeploymentPipeline",
    "DeploymentResult",
    "DeploymentRunner",
    "DeploymentState",
    "Executor",
    "HealthCheckConfig",
    "HealthChecker",
    "HealthReport",
    "LocalExecutor",
    "LogCollector",
    "OverallStatus",
    "PipelineConfig",
    "PipelineResult",
    "RegistryConfig",
    "ReleaseRecord",
    "RemoteHost",
    "RollbackManager",
    "SSHExecutor",
    "ServiceSpec",
    "ServiceStatus",
    "StateStore",
    "StepName",
    "StepResult",
    "TransferMode",
    "generate_github_workflow",
    "generate_stack_compose",
    "load_compose_project",
    "write_compose_file",
    "write_workflow_file",
]
