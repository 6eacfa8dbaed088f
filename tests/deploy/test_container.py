"""Tests for ContainerManager (docker CLI wrapper) over a scripted executor."""

from __future__ import annotations

import pytest

from shipline.core.errors import CommandError, ToolNotFoundError
from shipline.deploy.container import ContainerManager, archive_name_for, split_image_ref


class TestImageRefs:
    """split_image_ref() and archive_name_for()."""

    @pytest.mark.parametrize(
        ("ref", "expected"),
        [
            ("app", ("app", "latest")),
            ("app:1.4", ("app", "1.4")),
            ("registry:5000/team/app", ("registry:5000/team/app", "latest")),
            ("registry:5000/team/app:1.4", ("registry:5000/team/app", "1.4")),
            ("app@sha256:abc", ("app", "sha256:abc")),
        ],
    )
    def test_split(self, ref, expected):
        assert split_image_ref(ref) == expected

    def test_archive_name(self):
        assert archive_name_for("registry.example.com/team/shop:1.4") == "shop.tar.gz"
        assert archive_name_for("my-laravel-app") == "my-laravel-app.tar.gz"


class TestImages:
    """build / tag / inspect / remove."""

    def test_build_returns_image_id(self, fake_executor):
        ex = fake_executor().on("image inspect", stdout="sha256:new\n")
        mgr = ContainerManager(ex)
        image_id = mgr.build(
            ".", tag="shop:1.4", dockerfile=".docker/Dockerfile", build_args={"uid": "1000"}, pull=True,
        )
        assert image_id == "sha256:new"
        assert ex.calls[0]["argv"] == [
            "docker", "build", "-t", "shop:1.4", "-f", ".docker/Dockerfile",
            "--build-arg", "uid=1000", "--pull", ".",
        ]

    def test_build_failure_includes_stderr(self, fake_executor):
        ex = fake_executor().on("docker build", exit_code=1, stderr="failed to solve: COPY failed")
        with pytest.raises(CommandError, match="COPY failed"):
            ContainerManager(ex).build(".", tag="shop:1.4")

    def test_image_id_missing(self, fake_executor):
        ex = fake_executor().on("image inspect", exit_code=1, stderr="No such image")
        mgr = ContainerManager(ex)
        assert mgr.image_id("shop:1.4") is None
        assert not mgr.image_exists("shop:1.4")

    def test_tag(self, fake_executor):
        ex = fake_executor()
        ContainerManager(ex, docker_bin="podman").tag("shop:1.4", "shop:shipline-previous")
        assert ex.commands == ["podman tag shop:1.4 shop:shipline-previous"]

    def test_remove_image(self, fake_executor):
        ex = fake_executor().on("image rm", exit_code=1)
        assert ContainerManager(ex).remove_image("shop:old", force=True) is False
        assert ex.commands == ["docker image rm --force shop:old"]


class TestShipping:
    """save/load archives and registry operations."""

    def test_save_archive_pipeline(self, fake_executor):
        ex = fake_executor()
        path = ContainerManager(ex).save_archive("shop:1.4", "shop.tar.gz")
        assert path == "shop.tar.gz"
        script = ex.commands[0]
        assert script.startswith("docker save -o shop.tar.gz.partial.tar shop:1.4")
        assert "gzip -c shop.tar.gz.partial.tar > shop.tar.gz" in script
        assert script.endswith("rm -f shop.tar.gz.partial.tar")

    def test_load_gzip_archive(self, fake_executor):
        ex = fake_executor().on("docker load", stdout="Loaded image: shop:1.4\n")
        loaded = ContainerManager(ex).load_archive("/home/ubuntu/shop.tar.gz")
        assert loaded == ["shop:1.4"]
        assert ex.commands == ["gunzip -c /home/ubuntu/shop.tar.gz | docker load"]

    def test_load_plain_tar(self, fake_executor):
        ex = fake_executor().on("docker load", stdout="Loaded image ID: sha256:abc\n")
        assert ContainerManager(ex).load_archive("shop.tar") == ["sha256:abc"]
        assert ex.calls[0]["argv"] == ["docker", "load", "-i", "shop.tar"]

    def test_login_uses_stdin(self, fake_executor):
        ex = fake_executor()
        ContainerManager(ex).login("registry.example.com", "deploy", "hunter2")
        call = ex.calls[0]
        assert call["argv"] == [
            "docker", "login", "--username", "deploy", "--password-stdin", "registry.example.com",
        ]
        assert call["input"] == "hunter2"
        assert "hunter2" not in call["cmd"]

    def test_push_and_pull(self, fake_executor):
        ex = fake_executor().on("image inspect", stdout="sha256:pulled\n")
        mgr = ContainerManager(ex)
        mgr.push("registry.example.com/shop:1.4")
        assert mgr.pull("registry.example.com/shop:1.4") == "sha256:pulled"
        assert ex.commands[:2] == [
            "docker push registry.example.com/shop:1.4",
            "docker pull registry.example.com/shop:1.4",
        ]


class TestContainers:
    """Availability and container status."""

    def test_docker_available(self, fake_executor):
        ex = fake_executor().on("docker info", stdout="27.0.1\n")
        assert ContainerManager(ex).is_docker_available()

    def test_docker_missing(self, fake_executor):
        ex = fake_executor()

        def missing(*args, **kwargs):
            raise ToolNotFoundError("docker")

        ex.run = missing
        assert not ContainerManager(ex).is_docker_available()

    def test_container_status(self, fake_executor):
        ex = fake_executor().on("docker inspect", stdout="running healthy\n")
        status = ContainerManager(ex).container_status("app_db")
        assert (status.status, status.health) == ("running", "healthy")
        assert status.is_up

    def test_container_status_unhealthy(self, fake_executor):
        ex = fake_executor().on("docker inspect", stdout="running unhealthy\n")
        assert not ContainerManager(ex).container_status("app_db").is_up

    def test_container_not_found(self, fake_executor):
        ex = fake_executor().on("docker inspect", exit_code=1)
        assert ContainerManager(ex).container_status("nope").status == "not_found"
