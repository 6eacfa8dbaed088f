"""Configuration models for shipline deployments.

Pydantic models describing one deployment: which image to build, how to
ship it, where the target host is, which compose files to activate, what
to run afterwards and how to decide the result is healthy.

Configuration sources, highest precedence first:

1. explicit overrides (CLI options)
2. a YAML file (``shipline.yml``) via ``PipelineConfig.from_file``
3. environment variables: ``SHIPLINE_*`` plus the secret names the CI
   workflow already provides (``SERVER_IP``, ``SSH_USER``, ``SSH_KEY``,
   ``SSH_PORT``, ``REGISTRY_URL``, ``REGISTRY_USERNAME``,
   ``REGISTRY_PASSWORD``, ``HEALTH_URL``)
4. model defaults, some taken from :class:`~shipline.core.settings.ShiplineSettings`

Key Concepts:
    RemoteHost: Where the stack runs. ``is_local`` when no host is set.
    RegistryConfig: Registry credentials for ``transfer_mode=registry``.
    HealthCheckConfig: Endpoint, retry and backoff policy.
    PipelineConfig: Everything one run needs; ``run_id`` auto-generated.
    DeploymentMode / TransferMode: Enums for ad-hoc compose operations
        and image shipping.

Tags:
    configuration, pydantic, deployment, env, yaml
"""

from __future__ import annotations

import os
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator

from shipline.core.errors import ConfigError, InvalidConfigError
from shipline.core.settings import get_settings
from shipline.deploy.container import archive_name_for
from shipline.deploy.results import StepName

DEFAULT_MAINTENANCE_COMMANDS = [
    "php artisan migrate --force",
    "php artisan config:cache",
    "php artisan route:cache",
]


class DeploymentMode(str, Enum):
    """Ad-hoc compose operation."""

    UP = "up"  # Start services
    DOWN = "down"  # Stop services
    RESTART = "restart"  # Restart services
    STATUS = "status"  # Check service status
    LOGS = "logs"  # Collect logs


class TransferMode(str, Enum):
    """How the built image reaches the target host."""

    ARCHIVE = "archive"  # docker save | gzip, scp, docker load
    REGISTRY = "registry"  # docker push, remote docker pull


class RemoteHost(BaseModel):
    """SSH target for activation. Empty ``host`` means this machine."""

    host: str = ""
    user: str | None = None
    port: int = Field(default=22, ge=1, le=65535)
    key_path: str | None = None
    key_material: SecretStr | None = Field(
        default=None,
        description="Private key text, e.g. the SSH_KEY CI secret",
    )
    deploy_dir: str = Field(
        default="/home/ubuntu",
        description="Directory on the host holding docker-compose.yml and .env",
    )

    @property
    def is_local(self) -> bool:
        return self.host in ("", "local", "localhost", "127.0.0.1")

    @property
    def display(self) -> str:
        if self.is_local:
            return "local"
        return f"{self.user}@{self.host}" if self.user else self.host


class RegistryConfig(BaseModel):
    """Container registry for ``transfer_mode=registry``."""

    url: str | None = Field(default=None, description="Registry host; None for Docker Hub")
    username: str | None = None
    password: SecretStr | None = None
    repository: str | None = Field(
        default=None,
        description="Repository path in the registry; defaults to the image name",
    )

    def image_ref(self, image: str, tag: str) -> str:
        repo = self.repository or image
        if self.url:
            repo = f"{self.url.rstrip('/')}/{repo}"
        return f"{repo}:{tag}"


class HealthCheckConfig(BaseModel):
    """How to probe the application's health endpoint after activation."""

    url: str | None = Field(default=None, description="e.g. https://example.com/health")
    timeout_seconds: float = Field(default=5.0, gt=0)
    retries: int = Field(default=5, ge=1, description="Total probe attempts")
    interval_seconds: float = Field(default=2.0, ge=0)
    backoff: float = Field(default=2.0, ge=1.0)
    max_interval_seconds: float = Field(default=15.0, ge=0)
    expected_status: str = "ok"
    required_checks: list[str] = Field(default_factory=list)
    verify_tls: bool = True

    def delays(self) -> list[float]:
        """Sleep before each retry: interval, interval*backoff, ... capped."""
        delays = []
        delay = self.interval_seconds
        for _ in range(self.retries - 1):
            delays.append(min(delay, self.max_interval_seconds))
            delay *= self.backoff
        return delays


class PipelineConfig(BaseModel):
    """Configuration for one deployment pipeline run.

    Example::

        config = PipelineConfig(
            image="my-laravel-app",
            host=RemoteHost(host="203.0.113.10", user="ubuntu"),
            health=HealthCheckConfig(url="https://example.com/health"),
        )
    """

    # Build
    image: str = Field(default="app", description="Image repository name")
    tag: str = Field(default="latest")
    dockerfile: str | None = Field(default=None, description="Dockerfile path (-f)")
    build_context: str = Field(default=".")
    build_args: dict[str, str] = Field(default_factory=dict)
    build_pull: bool = Field(default=False, description="Always pull base images (--pull)")

    # Transfer
    transfer_mode: TransferMode = TransferMode.ARCHIVE
    archive_name: str | None = Field(default=None, description="Defaults to <image>.tar.gz")
    archive_dir: Path = Field(default=Path("."), description="Local directory for the archive")
    keep_archive: bool = Field(default=False, description="Keep the remote archive after loading")
    registry: RegistryConfig | None = None

    # Activate
    host: RemoteHost = Field(default_factory=RemoteHost)
    compose_files: list[str] = Field(default_factory=lambda: ["docker-compose.yml"])
    env_file: str | None = None
    project_name: str | None = None
    compose_command: str = Field(default_factory=lambda: get_settings().compose_command)
    docker_bin: str = Field(default_factory=lambda: get_settings().docker_bin)
    git_pull: bool = Field(default=False, description="Run 'git pull' in deploy_dir first")
    pre_pull: bool = Field(default=False, description="Run 'compose pull' before 'up'")
    remove_orphans: bool = True
    activate_timeout_seconds: int = Field(default=120, ge=0)

    # Maintain
    app_service: str = "app"
    maintenance_commands: list[str] = Field(
        default_factory=lambda: list(DEFAULT_MAINTENANCE_COMMANDS)
    )

    # Health / rollback
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    auto_rollback: bool = False

    # Run
    skip_steps: list[StepName] = Field(default_factory=list)
    collect_service_logs: bool = True
    command_timeout_seconds: int = Field(
        default_factory=lambda: get_settings().command_timeout_seconds
    )
    output_dir: Path = Field(default_factory=lambda: get_settings().output_dir)
    state_dir: Path = Field(default_factory=lambda: get_settings().state_dir)
    run_id: str = Field(default="", description="Unique run identifier (auto-generated)")

    @model_validator(mode="after")
    def _set_defaults(self) -> PipelineConfig:
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:12]
        if not self.archive_name:
            self.archive_name = archive_name_for(self.image)
        if self.transfer_mode == TransferMode.REGISTRY and self.registry is None:
            raise ValueError("transfer_mode 'registry' requires registry settings")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def image_ref(self) -> str:
        """Locally built image reference."""
        return f"{self.image}:{self.tag}"

    @property
    def deployed_ref(self) -> str:
        """Image reference as the target host knows it."""
        if self.transfer_mode == TransferMode.REGISTRY and self.registry is not None:
            return self.registry.image_ref(self.image, self.tag)
        return self.image_ref

    @property
    def project(self) -> str:
        """Name used for state files: project name, else image name."""
        return self.project_name or self.image.rsplit("/", 1)[-1]

    @property
    def local_archive(self) -> Path:
        return self.archive_dir / str(self.archive_name)

    @property
    def remote_archive(self) -> str:
        return f"{self.host.deploy_dir.rstrip('/')}/{self.archive_name}"

    def should_run(self, step: StepName) -> bool:
        return step not in self.skip_steps

    def to_safe_dict(self) -> dict[str, Any]:
        """JSON-compatible dump with secrets masked."""
        return self.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, **overrides: Any) -> PipelineConfig:
        """Create config from environment variables, then apply overrides."""
        return cls._build(_env_values(), overrides)

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> PipelineConfig:
        """Create config from a YAML file layered over the environment."""
        p = Path(path)
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {p}: {exc}", cause=exc) from exc
        except yaml.YAMLError as exc:
            raise InvalidConfigError(str(p), f"Invalid YAML in {p}: {exc}", cause=exc) from exc
        if not isinstance(data, dict):
            raise InvalidConfigError(str(p), f"{p} must contain a mapping")
        return cls._build(_layer(_env_values(), data), overrides)

    @classmethod
    def _build(cls, base: dict[str, Any], overrides: dict[str, Any]) -> PipelineConfig:
        values = _layer(base, {k: v for k, v in overrides.items() if v is not None})
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            first = exc.errors()[0]
            setting = ".".join(str(part) for part in first["loc"]) or "config"
            raise InvalidConfigError(setting, f"Invalid configuration: {exc}", cause=exc) from exc


# ---------------------------------------------------------------------------
# Environment mapping
# ---------------------------------------------------------------------------

# field path -> env var names, first one set wins
_ENV_MAP: dict[tuple[str, ...], tuple[str, ...]] = {
    ("image",): ("SHIPLINE_IMAGE",),
    ("tag",): ("SHIPLINE_TAG",),
    ("dockerfile",): ("SHIPLINE_DOCKERFILE",),
    ("build_context",): ("SHIPLINE_BUILD_CONTEXT",),
    ("transfer_mode",): ("SHIPLINE_TRANSFER_MODE",),
    ("archive_name",): ("SHIPLINE_ARCHIVE_NAME",),
    ("compose_files",): ("SHIPLINE_COMPOSE_FILES",),
    ("env_file",): ("SHIPLINE_ENV_FILE",),
    ("project_name",): ("SHIPLINE_PROJECT_NAME",),
    ("app_service",): ("SHIPLINE_APP_SERVICE",),
    ("git_pull",): ("SHIPLINE_GIT_PULL",),
    ("pre_pull",): ("SHIPLINE_PRE_PULL",),
    ("auto_rollback",): ("SHIPLINE_AUTO_ROLLBACK",),
    ("skip_steps",): ("SHIPLINE_SKIP_STEPS",),
    ("host", "host"): ("SHIPLINE_HOST", "SERVER_IP"),
    ("host", "user"): ("SHIPLINE_SSH_USER", "SSH_USER"),
    ("host", "port"): ("SHIPLINE_SSH_PORT", "SSH_PORT"),
    ("host", "key_path"): ("SHIPLINE_SSH_KEY_PATH", "SSH_KEY_PATH"),
    ("host", "key_material"): ("SHIPLINE_SSH_KEY", "SSH_KEY"),
    ("host", "deploy_dir"): ("SHIPLINE_DEPLOY_DIR",),
    ("registry", "url"): ("SHIPLINE_REGISTRY_URL", "REGISTRY_URL"),
    ("registry", "username"): ("SHIPLINE_REGISTRY_USERNAME", "REGISTRY_USERNAME"),
    ("registry", "password"): ("SHIPLINE_REGISTRY_PASSWORD", "REGISTRY_PASSWORD"),
    ("registry", "repository"): ("SHIPLINE_REGISTRY_REPOSITORY", "REGISTRY_REPOSITORY"),
    ("health", "url"): ("SHIPLINE_HEALTH_URL", "HEALTH_URL"),
    ("health", "retries"): ("SHIPLINE_HEALTH_RETRIES",),
    ("health", "timeout_seconds"): ("SHIPLINE_HEALTH_TIMEOUT",),
}

_LIST_FIELDS = {("compose_files",), ("skip_steps",)}
_BOOL_FIELDS = {("git_pull",), ("pre_pull",), ("auto_rollback",)}
_SSH_KEY_FIELDS = {"key_path", "key_material"}


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _env_values() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for path, names in _ENV_MAP.items():
        raw = next((os.environ[n] for n in names if os.environ.get(n)), None)
        if raw is None:
            continue
        value: Any = raw
        if path in _LIST_FIELDS:
            value = [item.strip() for item in raw.split(",") if item.strip()]
        elif path in _BOOL_FIELDS:
            value = _truthy(raw)
        target = values
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return values


def _layer(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge *override* over *base*; an SSH key in *override* replaces both key fields of *base*."""
    host = override.get("host")
    if isinstance(host, dict) and _SSH_KEY_FIELDS & host.keys() and isinstance(base.get("host"), dict):
        base = {**base, "host": {k: v for k, v in base["host"].items() if k not in _SSH_KEY_FIELDS}}
    return _deep_merge(base, override)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


__all__ = [
    "DEFAULT_MAINTENANCE_COMMANDS",
    "DeploymentMode",
    "HealthCheckConfig",
    "PipelineConfig",
    "RegistryConfig",
    "RemoteHost",
    "TransferMode",
]
