"""Docker Compose files: parsing, validation, generation and CLI argv.

A deployed stack is described by a ``docker-compose.yml`` plus the
``.env`` file next to it. shipline reads that pair the way Compose does
(so it can validate a stack before shipping it and know which services
must come up), renders the reference Laravel stack from a registry of
``ServiceSpec`` objects, and builds the ``docker compose`` argv lists the
pipeline steps run on the target host.

Key Concepts:
    ComposeService / ComposeProject: Parsed, interpolated view of a
        compose file with ``depends_on``/``environment``/``networks``
        normalised from their short and long forms.
    load_compose_project: Path (+ optional env file) -> ComposeProject.
        Process environment wins over ``.env`` values, as in Compose.
    startup_order: Topological order over ``depends_on``.
    ComposeCommand: argv builder for ``docker compose`` (v2 plugin) and
        ``docker-compose`` (v1), honouring ``-f``, ``--project-name`` and
        ``--env-file``.
    LARAVEL_STACK: Registry of the five reference services (app, db,
        nginx, phpmyadmin, redis).
    generate_stack_compose: Registry -> YAML string with ``${VAR}``
        placeholders left for Compose to resolve on the host.

Architecture Decisions:
    - YAML string output (not dict): callers get a ready-to-write string
      with a human-readable header comment.
    - Services keyed by role (``app``, ``db``...) with prefixed container
      names, so ``compose exec app`` works against generated stacks.
    - ``ps --format json`` output is accepted both as one JSON array
      (compose < 2.21) and as one object per line.

Related Modules:
    - :mod:`shipline.deploy.envfile` - ``.env`` parsing and interpolation
    - :mod:`shipline.deploy.steps` - runs ComposeCommand argv lists
    - :mod:`shipline.deploy.workflow` - DeploymentRunner

Tags:
    compose, docker, yaml, generation, validation, deployment
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from shipline.core.errors import ComposeFileError
from shipline.deploy.envfile import Interpolator, load_env_file

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_FILE = "docker-compose.yml"


def _yaml_dumps(data: dict[str, Any]) -> str:
    """Serialize dict to a YAML string, keeping key order."""
    return yaml.dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)


# ---------------------------------------------------------------------------
# Parsed compose model
# ---------------------------------------------------------------------------


@dataclass
class ComposeService:
    """One service from a compose file after interpolation."""

    name: str
    image: str | None = None
    build: dict[str, Any] | None = None
    container_name: str | None = None
    command: str | list[str] | None = None
    ports: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    restart: str | None = None

    @property
    def published_ports(self) -> list[str]:
        """Host-side ports of every ``ports`` entry that publishes one.

        ``"8080:80"`` -> ``"8080"``, ``"127.0.0.1:8080:80"`` -> ``"8080"``.
        A mapping whose host side interpolated to empty yields ``""``.
        """
        published = []
        for spec in self.ports:
            parts = spec.split("/")[0].rsplit(":", 2)
            if len(parts) >= 2:
                published.append(parts[-2])
        return published

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "build": self.build,
            "container_name": self.container_name,
            "ports": self.ports,
            "depends_on": self.depends_on,
            "networks": self.networks,
            "volumes": self.volumes,
        }


@dataclass
class ComposeProject:
    """A parsed compose file."""

    path: Path
    name: str | None = None
    services: dict[str, ComposeService] = field(default_factory=dict)
    networks: dict[str, Any] = field(default_factory=dict)
    volumes: dict[str, Any] = field(default_factory=dict)
    missing_variables: list[str] = field(default_factory=list)

    @property
    def service_names(self) -> list[str]:
        return list(self.services)

    def get(self, name: str) -> ComposeService:
        try:
            return self.services[name]
        except KeyError:
            available = ", ".join(self.services) or "none"
            raise ComposeFileError(
                f"Service {name!r} is not defined in {self.path}. Available: {available}"
            ).with_context(service=name) from None

    def published_ports(self) -> dict[str, list[str]]:
        return {name: svc.published_ports for name, svc in self.services.items()}

    def startup_order(self) -> list[str]:
        """Order services so every service follows its dependencies.

        Ties keep declaration order.

        Raises
        ------
        ComposeFileError
            If a service depends on an undefined service or the
            dependencies form a cycle.
        """
        for svc in self.services.values():
            for dep in svc.depends_on:
                if dep not in self.services:
                    raise ComposeFileError(
                        f"Service {svc.name!r} depends on undefined service {dep!r}"
                    ).with_context(service=svc.name)

        remaining = {name: set(svc.depends_on) for name, svc in self.services.items()}
        order: list[str] = []
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                cycle = ", ".join(sorted(remaining))
                raise ComposeFileError(f"Dependency cycle between services: {cycle}")
            for name in ready:
                order.append(name)
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def problems(self) -> list[str]:
        """Human-readable list of issues that would break ``compose up``."""
        issues = [f"variable {var} is not set" for var in self.missing_variables]
        for svc in self.services.values():
            if not svc.image and not svc.build:
                issues.append(f"service {svc.name} has neither image nor build")
            for port in svc.published_ports:
                if not port:
                    issues.append(f"service {svc.name} publishes an empty host port")
            for net in svc.networks:
                if net not in self.networks and net != "default":
                    issues.append(f"service {svc.name} uses undeclared network {net}")
        try:
            self.startup_order()
        except ComposeFileError as exc:
            issues.append(exc.message)
        return issues


def _as_list(value: Any) -> list[str]:
    """Normalise the list-or-mapping forms Compose accepts to a name list."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        return [str(k) for k in value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _environment(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    env = {}
    for item in value:
        key, _, val = str(item).partition("=")
        env[key] = val
    return env


def _port(value: Any) -> str:
    if isinstance(value, Mapping):
        target = value.get("target")
        published = value.get("published")
        return f"{published}:{target}" if published is not None else str(target)
    return str(value)


def _volume(value: Any) -> str:
    if isinstance(value, Mapping):
        source = value.get("source")
        target = value.get("target", "")
        return f"{source}:{target}" if source else str(target)
    return str(value)


def _parse_service(name: str, raw: Any) -> ComposeService:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ComposeFileError(f"Service {name!r} must be a mapping").with_context(service=name)

    build = raw.get("build")
    if isinstance(build, str):
        build = {"context": build}

    return ComposeService(
        name=name,
        image=raw.get("image"),
        build=build,
        container_name=raw.get("container_name"),
        command=raw.get("command"),
        ports=[_port(p) for p in raw.get("ports") or []],
        environment=_environment(raw.get("environment")),
        depends_on=_as_list(raw.get("depends_on")),
        volumes=[_volume(v) for v in raw.get("volumes") or []],
        networks=_as_list(raw.get("networks")),
        restart=raw.get("restart"),
    )


def parse_compose(
    text: str,
    env: Mapping[str, str] | None = None,
    path: str | Path = DEFAULT_COMPOSE_FILE,
) -> ComposeProject:
    """Parse compose YAML text, interpolating against *env*."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ComposeFileError(f"Invalid YAML in {path}: {exc}", cause=exc) from exc

    if not isinstance(raw, Mapping) or not isinstance(raw.get("services"), Mapping):
        raise ComposeFileError(f"{path} has no 'services' mapping")

    interp = Interpolator(env or {})
    data = interp.interpolate_data(raw)

    project = ComposeProject(
        path=Path(path),
        name=data.get("name"),
        services={name: _parse_service(name, svc) for name, svc in data["services"].items()},
        networks=dict(data.get("networks") or {}),
        volumes=dict(data.get("volumes") or {}),
        missing_variables=sorted(interp.missing),
    )
    return project


def load_compose_project(
    path: str | Path = DEFAULT_COMPOSE_FILE,
    env_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ComposeProject:
    """Load a compose file the way ``docker compose`` would see it.

    Parameters
    ----------
    path
        Compose file.
    env_file
        ``.env`` file to interpolate from. Defaults to ``.env`` beside
        the compose file when that exists.
    environ
        Process environment; defaults to ``os.environ``. Wins over
        values from the env file.

    Raises
    ------
    ComposeFileError
        If the file is missing, not YAML, or uses ``${VAR:?err}`` on an
        unset variable.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ComposeFileError(f"Cannot read compose file {p}: {exc}", cause=exc) from exc

    env: dict[str, str] = {}
    if env_file is not None:
        env.update(load_env_file(env_file))
    elif (p.parent / ".env").is_file():
        env.update(load_env_file(p.parent / ".env"))
    env.update(os.environ if environ is None else environ)

    project = parse_compose(text, env, path=p)
    logger.debug(
        "compose.loaded",
        extra={
            "path": str(p),
            "services": project.service_names,
            "missing": project.missing_variables,
        },
    )
    return project


# ---------------------------------------------------------------------------
# docker compose argv builder
# ---------------------------------------------------------------------------


@dataclass
class ComposeCommand:
    """Builds ``docker compose`` / ``docker-compose`` argv lists.

    Example::

        cmd = ComposeCommand(files=["/home/ubuntu/docker-compose.yml"])
        cmd.up(remove_orphans=True)
        # ['docker', 'compose', '-f', '/home/ubuntu/docker-compose.yml',
        #  'up', '-d', '--remove-orphans']
    """

    files: list[str] = field(default_factory=list)
    project_name: str | None = None
    env_file: str | None = None
    command: str = "docker compose"

    @property
    def is_v1(self) -> bool:
        return shlex.split(self.command)[-1] == "docker-compose"

    @property
    def base(self) -> list[str]:
        argv = shlex.split(self.command)
        for f in self.files:
            argv.extend(["-f", f])
        if self.project_name:
            argv.extend(["--project-name", self.project_name])
        if self.env_file:
            argv.extend(["--env-file", self.env_file])
        return argv

    def up(
        self,
        *,
        detach: bool = True,
        remove_orphans: bool = False,
        build: bool = False,
        services: list[str] | None = None,
    ) -> list[str]:
        argv = [*self.base, "up"]
        if detach:
            argv.append("-d")
        if remove_orphans:
            argv.append("--remove-orphans")
        if build:
            argv.append("--build")
        argv.extend(services or [])
        return argv

    def down(self, *, remove_orphans: bool = False, volumes: bool = False) -> list[str]:
        argv = [*self.base, "down"]
        if remove_orphans:
            argv.append("--remove-orphans")
        if volumes:
            argv.append("--volumes")
        return argv

    def restart(self, services: list[str] | None = None) -> list[str]:
        return [*self.base, "restart", *(services or [])]

    def ps(self) -> list[str]:
        # v1 has no JSON output; parse_ps_output handles its table
        if self.is_v1:
            return [*self.base, "ps"]
        return [*self.base, "ps", "--all", "--format", "json"]

    def exec(self, service: str, command: list[str] | str) -> list[str]:
        if isinstance(command, str):
            command = shlex.split(command)
        return [*self.base, "exec", "-T", service, *command]

    def logs(self, service: str | None = None, tail: int = 200) -> list[str]:
        argv = [*self.base, "logs", "--no-color", "--tail", str(tail)]
        if service:
            argv.append(service)
        return argv

    def pull(self, services: list[str] | None = None) -> list[str]:
        return [*self.base, "pull", *(services or [])]

    def services(self) -> list[str]:
        """argv printing the declared service names, one per line."""
        return [*self.base, "config", "--services"]


def map_compose_status(state: str) -> str:
    """Map Docker Compose state to our status values."""
    state = state.lower()
    if "unhealthy" in state:
        return "unhealthy"
    if "healthy" in state:
        return "healthy"
    if state.startswith("up") or state == "running":
        return "running"
    if "exit" in state:
        return "exited"
    if "restarting" in state:
        return "restarting"
    if "starting" in state or "created" in state:
        return "starting"
    return "not_found"


def parse_ps_output(stdout: str) -> list[dict[str, str]]:
    """Parse ``compose ps`` output into dicts with name/service/image/state.

    Accepts v2 JSON (array or one object per line) and the v1 table.
    """
    text = stdout.strip()
    if not text:
        return []

    rows: list[dict[str, Any]] = []
    if text.startswith("["):
        try:
            rows = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ComposeFileError(f"Unreadable compose ps output: {exc}", cause=exc) from exc
    elif text.startswith("{"):
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("compose.ps_unparsed_line", extra={"line": line})
    else:
        return _parse_v1_table(text)

    services = []
    for data in rows:
        state = data.get("State", "")
        health = data.get("Health", "")
        services.append({
            "name": data.get("Name", ""),
            "service": data.get("Service", data.get("Name", "unknown")),
            "container_id": data.get("ID", ""),
            "image": data.get("Image", ""),
            "status": map_compose_status(health or state),
        })
    return services


def _parse_v1_table(text: str) -> list[dict[str, str]]:
    services = []
    for line in text.splitlines()[1:]:
        if not line.strip() or set(line.strip()) == {"-"}:
            continue
        columns = line.split("  ")
        columns = [c.strip() for c in columns if c.strip()]
        if len(columns) < 3:
            continue
        name = columns[0]
        services.append({
            "name": name,
            "service": name,
            "container_id": "",
            "image": "",
            "status": map_compose_status(columns[2]),
        })
    return services


# ---------------------------------------------------------------------------
# Reference stack registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceSpec:
    """Specification for one service of the reference stack."""

    name: str
    """Service key in the compose file (e.g. 'app')."""

    category: str
    """app, database, proxy, cache or tool."""

    image: str
    """Docker image with tag. Ignored for the built app image."""

    ports: tuple[tuple[str, int], ...] = ()
    """(host port variable, container port) pairs."""

    env: dict[str, str] = field(default_factory=dict)
    """Environment variables; values may contain ``${VAR}`` placeholders."""

    depends_on: tuple[str, ...] = ()
    """Service dependencies."""

    volumes: tuple[str, ...] = ()
    """Volume entries; ``{prefix}`` is replaced with the stack prefix."""

    command: str | None = None
    build_context: str | None = None
    dockerfile: str | None = None
    build_args: dict[str, str] = field(default_factory=dict)
    working_dir: str | None = None
    tty: bool = False
    restart: str = "unless-stopped"
    description: str = ""


APP = ServiceSpec(
    name="app",
    category="app",
    image="",
    env={"SERVICE_NAME": "app", "SERVICE_TAGS": "${SERVICE_TAGS:-dev}"},
    volumes=("./:/var/www", "./.docker/php/local.ini:/usr/local/etc/php/conf.d/local.ini"),
    build_context=".",
    dockerfile=".docker/Dockerfile",
    build_args={"user": "${APP_USER:-www}", "uid": "${APP_UID:-1000}"},
    working_dir="/var/www/",
    tty=True,
    description="PHP-FPM application container",
)

DB = ServiceSpec(
    name="db",
    category="database",
    image="mysql:8.0",
    ports=(("DOCKER_DB_PORT", 3306),),
    env={
        "MYSQL_DATABASE": "${DB_DATABASE}",
        "MYSQL_ROOT_PASSWORD": "${DB_PASSWORD}",
        "MYSQL_PASSWORD": "${DB_PASSWORD}",
        "MYSQL_USER": "${DB_USERNAME}",
        "SERVICE_NAME": "mysql",
    },
    volumes=("{prefix}_mysql_data:/var/lib/mysql",),
    description="MySQL database",
)

NGINX = ServiceSpec(
    name="nginx",
    category="proxy",
    image="nginx:alpine",
    ports=(("DOCKER_APP_PORT", 80), ("DOCKER_APP_SSL_PORT", 443)),
    depends_on=("app",),
    volumes=(
        "./:/var/www",
        "./.docker/nginx/conf.d/:/etc/nginx/conf.d/",
        "./.docker/nginx/certs:/etc/nginx/certs",
    ),
    tty=True,
    description="Nginx web server in front of PHP-FPM",
)

PHPMYADMIN = ServiceSpec(
    name="phpmyadmin",
    category="tool",
    image="phpmyadmin/phpmyadmin",
    ports=(("DOCKER_PHPMYADMIN_PORT", 80),),
    env={"PMA_HOST": "db", "MYSQL_ROOT_PASSWORD": "${DB_PASSWORD}", "UPLOAD_LIMIT": "300M"},
    depends_on=("db",),
    description="Database admin UI",
)

REDIS = ServiceSpec(
    name="redis",
    category="cache",
    image="redis:alpine",
    ports=(("DOCKER_REDIS_PORT", 6379),),
    volumes=("{prefix}_cache:/data",),
    command="redis-server --save 20 1 --loglevel warning --requirepass ${REDIS_PASSWORD}",
    restart="always",
    description="Redis cache",
)

LARAVEL_STACK: dict[str, ServiceSpec] = {
    "app": APP,
    "db": DB,
    "nginx": NGINX,
    "phpmyadmin": PHPMYADMIN,
    "redis": REDIS,
}

STACK_VARIABLES = (
    "DOCKER_DB_PORT",
    "DOCKER_APP_PORT",
    "DOCKER_APP_SSL_PORT",
    "DOCKER_PHPMYADMIN_PORT",
    "DOCKER_REDIS_PORT",
    "DB_DATABASE",
    "DB_USERNAME",
    "DB_PASSWORD",
    "REDIS_PASSWORD",
)


def get_service(name: str) -> ServiceSpec:
    """Look up a reference stack service by name (case-insensitive).

    Raises
    ------
    ValueError
        If service name is not recognized.
    """
    key = name.lower().strip()
    if key not in LARAVEL_STACK:
        available = ", ".join(LARAVEL_STACK)
        raise ValueError(f"Unknown service: {name!r}. Available: {available}")
    return LARAVEL_STACK[key]


def generate_stack_compose(
    prefix: str = "app",
    services: list[str] | None = None,
    app_image: str | None = None,
) -> str:
    """Generate the reference stack's docker-compose YAML.

    Parameters
    ----------
    prefix
        Prefix for container, network and volume names.
    services
        Subset of ``LARAVEL_STACK`` names. Defaults to all five.
        Dependencies outside the subset are dropped.
    app_image
        Image reference for the app service. Defaults to *prefix*.

    Returns
    -------
    str
        YAML string ready to write to a file. Port and credential values
        stay as ``${VAR}`` placeholders for the target host's ``.env``.
    """
    specs = [get_service(name) for name in (services or list(LARAVEL_STACK))]
    selected = {s.name for s in specs}
    network = f"{prefix}_network"

    compose: dict[str, Any] = {"services": {}, "networks": {network: {"driver": "bridge"}}, "volumes": {}}

    for spec in specs:
        service: dict[str, Any] = {}

        if spec.build_context:
            build: dict[str, Any] = {"context": spec.build_context}
            if spec.dockerfile:
                build["dockerfile"] = spec.dockerfile
            if spec.build_args:
                build["args"] = dict(spec.build_args)
            service["build"] = build
            service["image"] = app_image or prefix
        else:
            service["image"] = spec.image

        service["container_name"] = f"{prefix}_{spec.name}"
        service["restart"] = spec.restart
        if spec.tty:
            service["tty"] = True
        if spec.working_dir:
            service["working_dir"] = spec.working_dir
        if spec.command:
            service["command"] = spec.command

        valid_deps = [d for d in spec.depends_on if d in selected]
        if valid_deps:
            service["depends_on"] = valid_deps

        if spec.ports:
            service["ports"] = [f"${{{var}}}:{internal}" for var, internal in spec.ports]
        if spec.env:
            service["environment"] = dict(spec.env)

        for entry in spec.volumes:
            entry = entry.format(prefix=prefix)
            service.setdefault("volumes", []).append(entry)
            source = entry.split(":", 1)[0]
            if not source.startswith((".", "/")):
                compose["volumes"][source] = {}

        service["networks"] = [network]
        compose["services"][spec.name] = service

    if not compose["volumes"]:
        del compose["volumes"]

    header = (
        f"# Generated by shipline for stack {prefix!r}\n"
        f"# Services: {', '.join(s.name for s in specs)}\n"
        f"# Set {', '.join(STACK_VARIABLES)} in .env\n\n"
    )
    return header + _yaml_dumps(compose)


def write_compose_file(content: str, output_path: str | Path = DEFAULT_COMPOSE_FILE) -> str:
    """Write compose YAML to a file and return its path."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.info("compose.written", extra={"path": str(path)})
    return str(path)


__all__ = [
    "LARAVEL_STACK",
    "STACK_VARIABLES",
    "ComposeCommand",
    "ComposeProject",
    "ComposeService",
    "ServiceSpec",
    "generate_stack_compose",
    "get_service",
    "load_compose_project",
    "map_compose_status",
    "parse_compose",
    "parse_ps_output",
    "write_compose_file",
]
