"""Tests for GitHub Actions workflow generation."""

from __future__ import annotations

import yaml

from shipline.deploy.ci import DEFAULT_WORKFLOW_PATH, generate_github_workflow, write_workflow_file
from shipline.deploy.config import TransferMode


def _steps(content: str) -> dict[str, dict]:
    data = yaml.safe_load(content)
    return {step["name"]: step for step in data["jobs"]["deploy"]["steps"]}


class TestGenerateGithubWorkflow:
    def test_defaults(self):
        content = generate_github_workflow(image="my-laravel-app")
        data = yaml.safe_load(content)

        assert data["name"] == "Deploy"
        assert data["on"] == {"push": {"branches": ["main"]}}
        assert data["jobs"]["deploy"]["runs-on"] == "ubuntu-latest"
        assert content.startswith("# Generated by shipline. Secrets used: SERVER_IP, SSH_KEY, SSH_USER\n")

        steps = _steps(content)
        assert steps["Checkout code"]["uses"] == "actions/checkout@v4"
        assert steps["Set up Python"]["with"] == {"python-version": "3.11"}
        assert steps["Install shipline"]["run"] == "pip install shipline"
        deploy = steps["Deploy"]
        assert deploy["run"] == "shipline deploy run --image my-laravel-app --transfer-mode archive"
        assert deploy["env"] == {
            "SERVER_IP": "${{ secrets.SERVER_IP }}",
            "SSH_USER": "${{ secrets.SSH_USER }}",
            "SSH_KEY": "${{ secrets.SSH_KEY }}",
        }

    def test_log_artifact(self):
        upload = _steps(generate_github_workflow())["Upload deployment logs"]
        assert upload["if"] == "always()"
        assert upload["with"]["path"] == "deploy-results/"

    def test_no_log_artifact(self):
        assert "Upload deployment logs" not in _steps(generate_github_workflow(upload_logs=False))

    def test_registry_secrets(self):
        content = generate_github_workflow(transfer_mode=TransferMode.REGISTRY)
        env = _steps(content)["Deploy"]["env"]
        assert env["REGISTRY_PASSWORD"] == "${{ secrets.REGISTRY_PASSWORD }}"
        assert "REGISTRY_USERNAME" in content.splitlines()[0]

    def test_options(self):
        content = generate_github_workflow(
            image="shop",
            branch="production",
            config_file="shipline.yml",
            health_url="https://shop.example.com/health",
            auto_rollback=True,
            package="shipline==0.1.0",
        )
        data = yaml.safe_load(content)
        steps = _steps(content)
        assert data["on"]["push"]["branches"] == ["production"]
        assert steps["Install shipline"]["run"] == "pip install shipline==0.1.0"
        assert steps["Deploy"]["run"] == (
            "shipline deploy run --image shop --transfer-mode archive --config shipline.yml --auto-rollback"
        )
        assert steps["Deploy"]["env"]["HEALTH_URL"] == "https://shop.example.com/health"
        assert "HEALTH_URL" not in content.splitlines()[0]


class TestWriteWorkflowFile:
    def test_creates_parent_dirs(self, tmp_path):
        target = tmp_path / DEFAULT_WORKFLOW_PATH
        path = write_workflow_file("name: Deploy\n", target)
        assert path == str(target)
        assert target.read_text(encoding="utf-8") == "name: Deploy\n"
