"""
Shared pytest fixtures and configuration for shipline tests.

This module provides:
- Environment isolation (no CI secrets or SHIPLINE_* leaking in)
- ``FakeExecutor``: a scripted stand-in for LocalExecutor / SSHExecutor
- Canned ``compose ps`` output and a sample compose project on disk

Usage:
    Fixtures are auto-discovered by pytest::

        def test_something(fake_executor):
            remote = fake_executor(host="203.0.113.10")
            remote.on("image inspect", stdout="sha256:abc\\n")
"""

from __future__ import annotations

import json
import shlex
import sys
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

# Ensure shipline package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shipline.core.settings import reset_settings
from shipline.deploy.executor import CommandResult, Executor


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Environment isolation
# =============================================================================

CI_VARIABLES = (
    "SERVER_IP", "SSH_USER", "SSH_KEY", "SSH_PORT", "SSH_KEY_PATH",
    "REGISTRY_URL", "REGISTRY_USERNAME", "REGISTRY_PASSWORD", "REGISTRY_REPOSITORY",
    "HEALTH_URL",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    """Strip deployment env vars and point state/output dirs at tmp_path."""
    import os

    for name in list(os.environ):
        if name.startswith("SHIPLINE_") or name in CI_VARIABLES:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SHIPLINE_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("SHIPLINE_OUTPUT_DIR", str(tmp_path / "results"))
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# Fake executor
# =============================================================================


class FakeExecutor(Executor):
    """Executor that records commands and answers from a script.

    ``on(needle, ...)`` registers a response for any command whose
    shell-joined text contains *needle*. Several responses for the same
    needle are returned in order; the last one repeats. Unmatched
    commands succeed with empty output.
    """

    def __init__(self, host: str = "local", remote: bool = False) -> None:
        super().__init__(timeout=60)
        self.host = host
        self._remote = remote
        self.calls: list[dict[str, Any]] = []
        self.puts: list[tuple[str, str]] = []
        self._responses: list[tuple[str, list[tuple[int, str, str]]]] = []

    @property
    def is_remote(self) -> bool:
        return self._remote

    def on(self, needle: str, stdout: str = "", exit_code: int = 0, stderr: str = "") -> FakeExecutor:
        for existing, queue in self._responses:
            if existing == needle:
                queue.append((exit_code, stdout, stderr))
                return self
        self._responses.append((needle, [(exit_code, stdout, stderr)]))
        return self

    @property
    def commands(self) -> list[str]:
        return [call["cmd"] for call in self.calls]

    def ran(self, needle: str) -> bool:
        return any(needle in cmd for cmd in self.commands)

    def index(self, needle: str) -> int:
        return next(i for i, cmd in enumerate(self.commands) if needle in cmd)

    def _respond(self, argv: list[str], cmd: str, check: bool, **extra: Any) -> CommandResult:
        self.calls.append({"argv": argv, "cmd": cmd, **extra})
        exit_code, stdout, stderr = 0, "", ""
        for needle, queue in self._responses:
            if needle in cmd:
                exit_code, stdout, stderr = queue.pop(0) if len(queue) > 1 else queue[0]
                break
        result = CommandResult(argv=argv, exit_code=exit_code, stdout=stdout, stderr=stderr, host=self.host)
        self._notify(result)
        if check:
            result.check()
        return result

    def run(self, argv, *, check=True, timeout=None, input=None, cwd=None):
        return self._respond(list(argv), shlex.join(argv), check, cwd=cwd, input=input)

    def run_shell(self, script, *, check=True, timeout=None, cwd=None):
        return self._respond(["sh", "-c", script], script, check, cwd=cwd)

    def put(self, local_path, remote_path):
        self.puts.append((str(local_path), remote_path))
        result = CommandResult(argv=["scp", str(local_path), remote_path], exit_code=0, host=self.host)
        self._notify(result)
        return result


@pytest.fixture
def fake_executor() -> Callable[..., FakeExecutor]:
    """Factory for FakeExecutor instances."""
    return FakeExecutor


# =============================================================================
# Compose fixtures
# =============================================================================


def ps_json(*services: tuple[str, str], health: str = "") -> str:
    """``compose ps --format json`` output, one object per line."""
    return "\n".join(
        json.dumps({
            "ID": f"{i:012x}",
            "Name": f"app_{name}",
            "Service": name,
            "Image": f"{name}:latest",
            "State": state,
            "Health": health,
        })
        for i, (name, state) in enumerate(services, start=1)
    ) + "\n"


@pytest.fixture
def compose_ps() -> Callable[..., str]:
    """Builder for canned ``compose ps`` JSON output."""
    return ps_json


@pytest.fixture
def compose_dir(tmp_path: Path) -> Path:
    """A directory with a small compose file and its .env."""
    d = tmp_path / "stack"
    d.mkdir()
    (d / "docker-compose.yml").write_text(
        """
services:
  app:
    build:
      context: .
    image: shop:latest
    depends_on: [db]
  db:
    image: mysql:8.0
    ports:
      - "${DOCKER_DB_PORT}:3306"
    environment:
      MYSQL_DATABASE: ${DB_DATABASE:-laravel}
  nginx:
    image: nginx:alpine
    ports:
      - "${DOCKER_APP_PORT:-80}:80"
    depends_on:
      app:
        condition: service_started
""",
        encoding="utf-8",
    )
    (d / ".env").write_text("DOCKER_DB_PORT=3307\nDB_DATABASE=shop\n", encoding="utf-8")
    return d
