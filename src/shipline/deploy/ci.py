"""GitHub Actions workflow generation.

Renders a workflow that runs the whole pipeline from a CI runner on every
push to the deploy branch. The runner builds the image itself and ships
it over SSH, so the only secrets needed are the target host's address,
the SSH user and the private key text::

    on: push (main)
    └── deploy
        ├── actions/checkout
        ├── actions/setup-python
        ├── pip install shipline
        └── shipline deploy run    (SERVER_IP, SSH_USER, SSH_KEY)

Registry secrets are only wired in when ``transfer_mode`` is
``registry``.

Tags:
    ci, github-actions, workflow, generation, yaml
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from shipline.deploy.config import TransferMode

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_PATH = ".github/workflows/deploy.yml"

SSH_SECRETS = ("SERVER_IP", "SSH_USER", "SSH_KEY")
REGISTRY_SECRETS = ("REGISTRY_URL", "REGISTRY_USERNAME", "REGISTRY_PASSWORD")


def _deploy_command(
    image: str,
    config_file: str | None,
    transfer_mode: TransferMode,
    auto_rollback: bool,
) -> str:
    parts = ["shipline", "deploy", "run", "--image", image, "--transfer-mode", transfer_mode.value]
    if config_file:
        parts += ["--config", config_file]
    if auto_rollback:
        parts.append("--auto-rollback")
    return " ".join(parts)


def generate_github_workflow(
    image: str = "app",
    branch: str = "main",
    python_version: str = "3.11",
    package: str = "shipline",
    config_file: str | None = None,
    health_url: str | None = None,
    transfer_mode: TransferMode = TransferMode.ARCHIVE,
    auto_rollback: bool = False,
    upload_logs: bool = True,
) -> str:
    """Render a GitHub Actions deployment workflow.

    Parameters
    ----------
    image
        Image repository name passed to ``shipline deploy run``.
    branch
        Branch whose pushes trigger a deployment.
    python_version
        Python installed on the runner.
    package
        pip requirement used to install shipline.
    config_file
        Optional ``shipline.yml`` in the repository.
    health_url
        Health endpoint probed after activation.
    transfer_mode
        ``archive`` (docker save + scp) or ``registry`` (push + pull).
    auto_rollback
        Restore the previous image when a post-build step fails.
    upload_logs
        Upload the ``deploy-results`` directory as an artifact.

    Returns
    -------
    str
        Workflow YAML.
    """
    env: dict[str, str] = {name: f"${{{{ secrets.{name} }}}}" for name in SSH_SECRETS}
    if transfer_mode == TransferMode.REGISTRY:
        env.update({name: f"${{{{ secrets.{name} }}}}" for name in REGISTRY_SECRETS})
    if health_url:
        env["HEALTH_URL"] = health_url

    steps: list[dict[str, Any]] = [
        {"name": "Checkout code", "uses": "actions/checkout@v4"},
        {
            "name": "Set up Python",
            "uses": "actions/setup-python@v5",
            "with": {"python-version": python_version},
        },
        {"name": "Install shipline", "run": f"pip install {package}"},
        {
            "name": "Deploy",
            "env": env,
            "run": _deploy_command(image, config_file, transfer_mode, auto_rollback),
        },
    ]
    if upload_logs:
        steps.append({
            "name": "Upload deployment logs",
            "if": "always()",
            "uses": "actions/upload-artifact@v4",
            "with": {"name": "deploy-results", "path": "deploy-results/"},
        })

    workflow: dict[str, Any] = {
        "name": "Deploy",
        "on": {"push": {"branches": [branch]}},
        "concurrency": {"group": "deploy", "cancel-in-progress": False},
        "jobs": {
            "deploy": {
                "runs-on": "ubuntu-latest",
                "steps": steps,
            }
        },
    }
    header = f"# Generated by shipline. Secrets used: {', '.join(sorted(set(env) - {'HEALTH_URL'}))}\n"
    return header + yaml.dump(workflow, default_flow_style=False, sort_keys=False, width=120)


def write_workflow_file(content: str, output_path: str | Path = DEFAULT_WORKFLOW_PATH) -> str:
    """Write workflow YAML to a file and return its path."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.info("workflow.written", extra={"path": str(path)})
    return str(path)


__all__ = ["DEFAULT_WORKFLOW_PATH", "generate_github_workflow", "write_workflow_file"]
