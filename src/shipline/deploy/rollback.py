"""Rollback to the previously deployed image.

Before a new image replaces the deployed tag on the target host, the
image currently behind that tag is tagged ``<repo>:shipline-previous``.
Rolling back retags it to the deployed tag and runs ``compose up -d``,
which recreates the containers whose image changed.

The tag lives on the target host, so a rollback works from a fresh CI
runner with no local state; the state file only adds history.

Tags:
    rollback, recovery, docker, tags, compose
"""

from __future__ import annotations

from shipline.core.errors import CommandError, ComposeFileError, RollbackError, ShiplineError
from shipline.core.logging import get_logger
from shipline.deploy.compose import ComposeCommand, parse_ps_output
from shipline.deploy.container import ContainerManager, split_image_ref
from shipline.deploy.state import ReleaseRecord, StateStore

logger = get_logger(__name__)

PREVIOUS_TAG = "shipline-previous"


def previous_ref(image_ref: str) -> str:
    """``registry/app:1.4`` -> ``registry/app:shipline-previous``."""
    repo, _ = split_image_ref(image_ref)
    return f"{repo}:{PREVIOUS_TAG}"


class RollbackManager:
    """Snapshots and restores the deployed image on the target host.

    Parameters
    ----------
    container
        ContainerManager bound to the target host's executor.
    compose
        Compose argv builder for the deployed stack.
    state
        Release state store.
    deploy_dir
        Directory on the host where compose commands run.
    remove_orphans
        Pass ``--remove-orphans`` to the restoring ``compose up``.
    """

    def __init__(
        self,
        container: ContainerManager,
        compose: ComposeCommand,
        state: StateStore,
        deploy_dir: str | None = None,
        remove_orphans: bool = True,
    ) -> None:
        self.container = container
        self.compose = compose
        self.state = state
        self.deploy_dir = deploy_dir
        self.remove_orphans = remove_orphans

    @property
    def host(self) -> str:
        return self.container.executor.host

    def running_image(self, service: str) -> str | None:
        """Image reference the running *service* container was started from."""
        result = self.container.executor.run(self.compose.ps(), cwd=self.deploy_dir, check=False)
        if not result.ok:
            return None
        try:
            rows = parse_ps_output(result.stdout)
        except ComposeFileError:
            return None
        row = next((r for r in rows if r["service"] == service), None)
        if row is None:
            return None
        return row["image"] or None

    def snapshot(self, image_ref: str, service: str | None = None) -> str | None:
        """Tag the deployed image as the rollback target.

        The image behind *image_ref* is used when it exists on the host.
        Otherwise, when *service* is given, the image its running container
        uses is tried, which covers releases that ship under a new tag.
        With nothing to snapshot any older ``shipline-previous`` tag is
        removed, so a later rollback cannot restore an unrelated image.

        Returns the snapshotted image id, or None on a first deployment.
        """
        source = image_ref
        image_id = self.container.image_id(image_ref)
        if image_id is None and service:
            running = self.running_image(service)
            if running and running != image_ref:
                source = running
                image_id = self.container.image_id(running)

        target = previous_ref(image_ref)
        if image_id is None:
            if self.container.image_exists(target):
                self.container.remove_image(target, force=True)
                logger.warning("rollback.stale_snapshot_removed", image=target, host=self.host)
            logger.info("rollback.no_snapshot", image=image_ref, host=self.host)
            return None
        self.container.tag(source, target)
        logger.info("rollback.snapshot", image=source, image_id=image_id, host=self.host)
        return image_id

    def can_rollback(self, image_ref: str) -> bool:
        return self.container.image_exists(previous_ref(image_ref))

    def rollback(self, image_ref: str, run_id: str, expected_image_id: str | None = None) -> ReleaseRecord:
        """Restore the snapshotted image and recreate the stack.

        When *expected_image_id* is given, the ``shipline-previous`` tag
        must still point at it.

        Raises
        ------
        RollbackError
            When no snapshot exists, it is not the expected image, or
            restoring it failed.
        """
        source = previous_ref(image_ref)
        image_id = self.container.image_id(source)
        if image_id is None:
            raise RollbackError(
                f"No previous release of {image_ref} on {self.host} to roll back to"
            ).with_context(host=self.host, run_id=run_id)
        if expected_image_id is not None and image_id != expected_image_id:
            raise RollbackError(
                f"{source} on {self.host} is {image_id}, not the snapshotted {expected_image_id}"
            ).with_context(host=self.host, run_id=run_id)

        logger.warning("rollback.started", image=image_ref, image_id=image_id, host=self.host)
        try:
            self.container.tag(source, image_ref)
            self.container.executor.run(
                self.compose.up(remove_orphans=self.remove_orphans),
                cwd=self.deploy_dir,
            )
        except CommandError as exc:
            raise RollbackError(
                f"Restoring {source} failed: {exc.message}", cause=exc
            ).with_context(host=self.host, run_id=run_id) from exc

        record = ReleaseRecord(
            run_id=run_id, image_ref=image_ref, image_id=image_id, host=self.host, status="rolled_back",
        )
        try:
            self.state.record_rollback(run_id, image_ref, image_id, host=self.host)
        except ShiplineError as exc:
            logger.warning("rollback.state_not_saved", error=exc.message)
        logger.warning("rollback.complete", image=image_ref, image_id=image_id, host=self.host)
        return record


__all__ = ["PREVIOUS_TAG", "RollbackManager", "previous_ref"]
