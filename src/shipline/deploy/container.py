"""Image and container management through the ``docker`` CLI.

``ContainerManager`` wraps the docker commands the pipeline needs:
building and tagging the application image, shipping it as a gzipped
archive or through a registry, and inspecting what is running. It runs
every command through an :class:`~shipline.deploy.executor.Executor`, so
the same manager drives the local daemon on the CI runner and the remote
daemon on the target host.

Key Concepts:
    ContainerManager: ``build()``, ``tag()``, ``save_archive()``,
        ``load_archive()``, ``login()``, ``push()``, ``pull()``,
        ``image_id()``, ``remove_image()``, ``container_status()``.
    ContainerStatus: ``status`` and ``health`` of one container.

Architecture Decisions:
    - subprocess, not docker-py: works with any runtime exposing a
      ``docker`` CLI, locally or over SSH.
    - ``login()`` sends the password on stdin (``--password-stdin``) so it
      never appears in a process list or a log line.
    - ``save_archive()`` writes the tar with ``docker save -o`` before
      compressing, so a failed save fails the command instead of leaving
      a truncated ``.tar.gz``.

Related Modules:
    - :mod:`shipline.deploy.executor` - where commands run
    - :mod:`shipline.deploy.steps` - BuildStep / TransferStep use this
    - :mod:`shipline.deploy.rollback` - tags and restores previous images

Tags:
    container, docker, image, registry, archive, subprocess
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import PurePosixPath

from shipline.core.errors import CommandError, CommandTimeoutError, ToolNotFoundError
from shipline.deploy.executor import CommandResult, Executor, LocalExecutor

logger = logging.getLogger(__name__)


@dataclass
class ContainerStatus:
    """Runtime status of a container."""

    name: str
    status: str
    health: str = "unknown"

    @property
    def is_up(self) -> bool:
        return self.status == "running" and self.health in ("healthy", "unknown", "")


def split_image_ref(ref: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into ``(repo, tag)``; tag defaults to ``latest``.

    A registry port (``registry:5000/app``) is not mistaken for a tag.
    """
    if "@" in ref:
        repo, _, digest = ref.partition("@")
        return repo, digest
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        repo, _, tag = ref.rpartition(":")
        return repo, tag
    return ref, "latest"


class ContainerManager:
    """Drives the ``docker`` CLI through an executor.

    Parameters
    ----------
    executor
        Where docker runs. Defaults to this machine.
    docker_bin
        Docker CLI binary.

    Example::

        mgr = ContainerManager()
        mgr.build(".", tag="my-laravel-app:latest", dockerfile=".docker/Dockerfile")
        mgr.save_archive("my-laravel-app:latest", "my-laravel-app.tar.gz")
    """

    def __init__(self, executor: Executor | None = None, docker_bin: str = "docker") -> None:
        self.executor = executor or LocalExecutor()
        self.docker_bin = docker_bin

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def is_docker_available(self) -> bool:
        """Check if Docker is installed and the daemon is reachable."""
        try:
            result = self._run_docker(["info", "--format", "{{.ServerVersion}}"], check=False, timeout=15)
        except (ToolNotFoundError, CommandTimeoutError):
            return False
        return result.ok

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def build(
        self,
        context: str = ".",
        tag: str = "app:latest",
        dockerfile: str | None = None,
        build_args: dict[str, str] | None = None,
        pull: bool = False,
        timeout: int | None = None,
    ) -> str | None:
        """Build an image and return its id."""
        args = ["build", "-t", tag]
        if dockerfile:
            args.extend(["-f", dockerfile])
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        if pull:
            args.append("--pull")
        args.append(context)

        self._run_docker(args, timeout=timeout)
        image_id = self.image_id(tag)
        logger.info("image.built", extra={"tag": tag, "image_id": image_id})
        return image_id

    def tag(self, source: str, target: str) -> None:
        self._run_docker(["tag", source, target])
        logger.debug("image.tagged", extra={"source": source, "target": target})

    def image_id(self, ref: str) -> str | None:
        """Return the image id for *ref*, or None when it does not exist."""
        result = self._run_docker(["image", "inspect", "--format", "{{.Id}}", ref], check=False)
        image_id = result.stdout.strip()
        return image_id if result.ok and image_id else None

    def image_exists(self, ref: str) -> bool:
        return self.image_id(ref) is not None

    def remove_image(self, ref: str, force: bool = False) -> bool:
        """Remove an image; returns False when docker refused."""
        args = ["image", "rm"]
        if force:
            args.append("--force")
        args.append(ref)
        return self._run_docker(args, check=False).ok

    # ------------------------------------------------------------------
    # Shipping
    # ------------------------------------------------------------------

    def save_archive(self, image: str, path: str, timeout: int | None = None) -> str:
        """Write *image* to a gzipped tarball (``docker save | gzip``)."""
        tar_path = f"{path}.partial.tar"
        script = " && ".join([
            shlex.join([self.docker_bin, "save", "-o", tar_path, image]),
            f"gzip -c {shlex.quote(tar_path)} > {shlex.quote(path)}",
            f"rm -f {shlex.quote(tar_path)}",
        ])
        self.executor.run_shell(script, timeout=timeout)
        logger.info("image.saved", extra={"image": image, "path": path, "host": self.executor.host})
        return path

    def load_archive(self, path: str, timeout: int | None = None) -> list[str]:
        """Load an image archive and return the image references loaded."""
        if path.endswith(".gz"):
            script = f"gunzip -c {shlex.quote(path)} | {shlex.join([self.docker_bin, 'load'])}"
            result = self.executor.run_shell(script, timeout=timeout)
        else:
            result = self._run_docker(["load", "-i", path], timeout=timeout)

        loaded = []
        for line in result.stdout.splitlines():
            for prefix in ("Loaded image: ", "Loaded image ID: "):
                if line.startswith(prefix):
                    loaded.append(line[len(prefix):].strip())
        logger.info("image.loaded", extra={"path": path, "images": loaded, "host": self.executor.host})
        return loaded

    def login(self, registry: str | None, username: str, password: str) -> None:
        args = ["login", "--username", username, "--password-stdin"]
        if registry:
            args.append(registry)
        self._run_docker(args, input=password)
        logger.info("registry.login", extra={"registry": registry or "docker.io", "host": self.executor.host})

    def push(self, ref: str, timeout: int | None = None) -> None:
        self._run_docker(["push", ref], timeout=timeout)
        logger.info("image.pushed", extra={"image": ref})

    def pull(self, ref: str, timeout: int | None = None) -> str | None:
        self._run_docker(["pull", ref], timeout=timeout)
        logger.info("image.pulled", extra={"image": ref, "host": self.executor.host})
        return self.image_id(ref)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def container_status(self, name: str) -> ContainerStatus:
        """Status (running, exited...) and health of a container."""
        result = self._run_docker(
            [
                "inspect", "--format",
                "{{.State.Status}} {{if .State.Health}}{{.State.Health.Status}}{{end}}",
                name,
            ],
            check=False,
        )
        if not result.ok:
            return ContainerStatus(name=name, status="not_found")
        parts = result.stdout.split()
        return ContainerStatus(
            name=name,
            status=parts[0] if parts else "unknown",
            health=parts[1] if len(parts) > 1 else "unknown",
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run_docker(
        self,
        args: list[str],
        check: bool = True,
        timeout: int | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Run a docker CLI command."""
        try:
            return self.executor.run([self.docker_bin, *args], check=check, timeout=timeout, input=input)
        except CommandError as exc:
            stderr = exc.stderr.strip()
            if stderr:
                exc.message = f"{exc.message}\n{stderr}"
                exc.args = (exc.message,)
            raise


def archive_name_for(image: str) -> str:
    """Default archive file name for an image (``my-laravel-app.tar.gz``)."""
    repo, _ = split_image_ref(image)
    return f"{PurePosixPath(repo).name}.tar.gz"


__all__ = [
    "ContainerManager",
    "ContainerStatus",
    "archive_name_for",
    "split_image_ref",
]
