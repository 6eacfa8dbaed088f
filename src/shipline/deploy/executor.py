"""Command execution for shipline: locally or on the target host over SSH.

Every external tool shipline drives (``docker``, ``docker compose``,
``git``, ``gzip``) is invoked through an ``Executor``. The pipeline steps
never call ``subprocess`` themselves, so the same step code activates a
stack on the CI runner (``LocalExecutor``) or on a remote server
(``SSHExecutor``), and tests replace the seam with a mock.

Key Concepts:
    CommandResult: argv, exit code, captured output and duration of one
        invocation. ``check()`` raises ``CommandError`` on non-zero exit.
    Executor: Abstract base with ``run(argv)``, ``run_shell(script)`` and
        ``put(local, remote)``.
    LocalExecutor: ``subprocess.run`` on this machine.
    SSHExecutor: ``ssh user@host -- <command>`` and ``scp`` for files.
        ``from_key_material()`` accepts the private key text a CI secret
        (``SSH_KEY``) provides and writes it to a 0600 temp file.
    redact: Masks passwords and tokens before commands reach logs.

Architecture Decisions:
    - subprocess, not paramiko/docker-py: the ``ssh``/``docker`` CLIs the
      deployment documentation already uses are the contract.
    - Shell pipelines (``docker save | gzip > f``) go through
      ``run_shell`` so they run under ``sh -c`` locally and under the
      login shell remotely, with identical text.
    - Missing binaries raise ``ToolNotFoundError``; timeouts raise
      ``CommandTimeoutError``; both carry the redacted command.

Tags:
    subprocess, ssh, scp, execution, remote, redaction
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from collections.abc import Callable
from typing import Any

from shipline.core.errors import (
    CommandError,
    CommandTimeoutError,
    ToolNotFoundError,
    TransferError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600

# Patterns for sensitive data that should be redacted from logged commands
SENSITIVE_PATTERNS = [
    r"(--password[= ])\S+",
    r"(-p\s*)(?=\S*\s+--username)\S+",
    r"((?:password|passwd|secret|token|api[_-]?key)=)\S+",
    r"(://[^:/\s]+:)[^@\s]+(?=@)",
]


def redact(text: str) -> str:
    """Mask credentials in a command line or output fragment."""
    for pattern in SENSITIVE_PATTERNS:
        text = re.sub(pattern, r"\1[REDACTED]", text, flags=re.IGNORECASE)
    return text


@dataclass
class CommandResult:
    """Outcome of a single command invocation."""

    argv: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    host: str = "local"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def display(self) -> str:
        """Redacted, shell-quoted form of the command."""
        return redact(shlex.join(self.argv))

    def check(self, message: str | None = None) -> CommandResult:
        """Raise ``CommandError`` unless the command succeeded."""
        if not self.ok:
            raise CommandError(
                message or f"Command failed (exit {self.exit_code}): {self.display}",
                command=self.display,
                exit_code=self.exit_code,
                stdout=self.stdout,
                stderr=self.stderr,
            ).with_context(host=self.host)
        return self


class Executor(ABC):
    """Runs commands somewhere: this machine or a remote host."""

    host: str = "local"

    def __init__(self, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._observers: list[Callable[[CommandResult], None]] = []

    @abstractmethod
    def run(
        self,
        argv: list[str],
        *,
        check: bool = True,
        timeout: int | None = None,
        input: str | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run an argv list."""

    @abstractmethod
    def run_shell(
        self,
        script: str,
        *,
        check: bool = True,
        timeout: int | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run a shell snippet (pipelines, redirections)."""

    @abstractmethod
    def put(self, local_path: str | Path, remote_path: str) -> CommandResult:
        """Copy a local file to the executor's host."""

    @property
    def is_remote(self) -> bool:
        return False

    def add_observer(self, observer: Callable[[CommandResult], None]) -> None:
        """Call *observer* with every CommandResult this executor produces."""
        self._observers.append(observer)

    def remove_observer(self, observer: Callable[[CommandResult], None]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, result: CommandResult) -> None:
        for observer in list(self._observers):
            observer(result)

    def _execute(
        self,
        cmd: list[str],
        *,
        display_argv: list[str],
        check: bool,
        timeout: int | None,
        input: str | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Invoke ``subprocess.run`` and translate failures into shipline errors."""
        timeout = timeout or self.timeout
        display = redact(shlex.join(display_argv))
        logger.debug("command.exec", extra={"host": self.host, "cmd": display})

        start = time.monotonic()
        try:
            proc = subprocess.run(  # noqa: S603
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(cmd[0], cause=exc).with_context(
                host=self.host, command=display,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(
                f"Command timed out after {timeout}s: {display}",
                command=display,
                timeout=timeout,
                cause=exc,
            ).with_context(host=self.host) from exc

        result = CommandResult(
            argv=display_argv,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration_seconds=time.monotonic() - start,
            host=self.host,
        )
        if not result.ok:
            logger.debug(
                "command.failed",
                extra={"host": self.host, "cmd": display, "exit_code": result.exit_code},
            )
        self._notify(result)
        if check:
            result.check()
        return result


class LocalExecutor(Executor):
    """Runs commands on this machine."""

    host = "local"

    def run(
        self,
        argv: list[str],
        *,
        check: bool = True,
        timeout: int | None = None,
        input: str | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        return self._execute(
            list(argv), display_argv=list(argv), check=check,
            timeout=timeout, input=input, cwd=cwd,
        )

    def run_shell(
        self,
        script: str,
        *,
        check: bool = True,
        timeout: int | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        argv = ["sh", "-c", script]
        return self._execute(argv, display_argv=argv, check=check, timeout=timeout, cwd=cwd)

    def put(self, local_path: str | Path, remote_path: str) -> CommandResult:
        src = Path(local_path)
        dest = Path(remote_path)
        if dest.is_dir():
            dest = dest / src.name
        start = time.monotonic()
        if src.resolve() != dest.resolve():
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        result = CommandResult(
            argv=["cp", str(src), str(dest)],
            exit_code=0,
            duration_seconds=time.monotonic() - start,
            host=self.host,
        )
        self._notify(result)
        return result


class SSHExecutor(Executor):
    """Runs commands on a remote host via the ``ssh``/``scp`` CLIs.

    Parameters
    ----------
    host
        Hostname or IP of the target server.
    user
        SSH login user.
    port
        SSH port.
    key_path
        Private key file (``-i``). Falls back to the SSH agent when None.
    ssh_bin, scp_bin
        Client binaries.
    connect_timeout
        ``ConnectTimeout`` option in seconds.
    options
        Extra ``-o`` options, e.g. ``["UserKnownHostsFile=/dev/null"]``.

    Example::

        with SSHExecutor.from_key_material("203.0.113.10", "ubuntu", key_text) as ssh:
            ssh.run(["docker", "compose", "ps"], cwd="/home/ubuntu")
    """

    def __init__(
        self,
        host: str,
        user: str | None = None,
        port: int = 22,
        key_path: str | Path | None = None,
        ssh_bin: str = "ssh",
        scp_bin: str = "scp",
        connect_timeout: int = 10,
        options: list[str] | None = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(timeout=timeout)
        self.host = host
        self.user = user
        self.port = port
        self.key_path = str(key_path) if key_path else None
        self.ssh_bin = ssh_bin
        self.scp_bin = scp_bin
        self.connect_timeout = connect_timeout
        self.options = list(options or [])
        self._owned_key: str | None = None

    @classmethod
    def from_key_material(
        cls,
        host: str,
        user: str | None,
        key_material: str,
        **kwargs: Any,
    ) -> SSHExecutor:
        """Create an executor from private key text (e.g. a CI secret)."""
        fd, path = tempfile.mkstemp(prefix="shipline-key-")
        with os.fdopen(fd, "w") as f:
            f.write(key_material if key_material.endswith("\n") else key_material + "\n")
        os.chmod(path, 0o600)
        executor = cls(host, user, key_path=path, **kwargs)
        executor._owned_key = path
        return executor

    def close(self) -> None:
        """Remove a temp key written by ``from_key_material``."""
        if self._owned_key and os.path.exists(self._owned_key):
            os.remove(self._owned_key)
        self._owned_key = None

    def __enter__(self) -> SSHExecutor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def is_remote(self) -> bool:
        return True

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def _options(self) -> list[str]:
        opts = [
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        for option in self.options:
            opts.extend(["-o", option])
        if self.key_path:
            opts.extend(["-i", self.key_path])
        return opts

    def ssh_argv(self, remote_command: str) -> list[str]:
        """Full local argv that runs *remote_command* on the host."""
        return [self.ssh_bin, "-p", str(self.port), *self._options(), self.target, "--", remote_command]

    def run(
        self,
        argv: list[str],
        *,
        check: bool = True,
        timeout: int | None = None,
        input: str | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        remote = shlex.join(argv)
        if cwd:
            remote = f"cd {shlex.quote(cwd)} && {remote}"
        return self._execute(
            self.ssh_argv(remote), display_argv=list(argv), check=check,
            timeout=timeout, input=input,
        )

    def run_shell(
        self,
        script: str,
        *,
        check: bool = True,
        timeout: int | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        if cwd:
            script = f"cd {shlex.quote(cwd)} && {script}"
        return self._execute(
            self.ssh_argv(script), display_argv=["sh", "-c", script],
            check=check, timeout=timeout,
        )

    def put(self, local_path: str | Path, remote_path: str) -> CommandResult:
        argv = [
            self.scp_bin, "-P", str(self.port), *self._options(),
            str(local_path), f"{self.target}:{remote_path}",
        ]
        try:
            return self._execute(argv, display_argv=argv, check=True, timeout=None)
        except CommandError as exc:
            raise TransferError(
                f"Copying {local_path} to {self.target}:{remote_path} failed: {exc.stderr.strip() or exc.message}",
                cause=exc,
            ).with_context(host=self.host) from exc


__all__ = [
    "CommandResult",
    "Executor",
    "LocalExecutor",
    "SSHExecutor",
    "redact",
]
