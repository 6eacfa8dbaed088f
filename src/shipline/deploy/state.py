"""Release history for a deployed project.

Each project gets one JSON file, ``<state_dir>/<project>.json``, holding
the current release, the release before it and a bounded history of
every attempt. The rollback manager reads it to report what it is
restoring; the CLI's ``deploy status`` shows it.

Example state file::

    {
      "project": "my-laravel-app",
      "current":  {"run_id": "3f2a9c1d0b7e", "image_ref": "my-laravel-app:latest",
                   "image_id": "sha256:...", "status": "deployed", ...},
      "previous": {...},
      "history":  [{...}, {...}],
      "updated_at": "2026-10-17T09:12:44+00:00"
    }

Tags:
    state, persistence, json, release-history, rollback
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from shipline.core.errors import ShiplineError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20

ReleaseStatus = Literal["deployed", "failed", "rolled_back"]


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ReleaseRecord(BaseModel):
    """One deployment attempt."""

    run_id: str
    image_ref: str
    image_id: str | None = None
    host: str = "local"
    status: ReleaseStatus = "deployed"
    deployed_at: str = Field(default_factory=_now)
    error: str | None = None


class DeploymentState(BaseModel):
    """Persisted release state of one project."""

    project: str
    current: ReleaseRecord | None = None
    previous: ReleaseRecord | None = None
    history: list[ReleaseRecord] = Field(default_factory=list)
    updated_at: str | None = None

    def _remember(self, record: ReleaseRecord) -> None:
        self.history.insert(0, record)
        del self.history[HISTORY_LIMIT:]


class StateStore:
    """Loads and saves ``DeploymentState`` for a project.

    Parameters
    ----------
    state_dir
        Directory holding state files (created on first save).
    project
        Project name; the file is ``<state_dir>/<project>.json``.
    """

    def __init__(self, state_dir: str | Path, project: str) -> None:
        self.state_dir = Path(state_dir)
        self.project = project

    @property
    def path(self) -> Path:
        return self.state_dir / f"{self.project}.json"

    def load(self) -> DeploymentState:
        """Read the state file; an absent file yields an empty state."""
        if not self.path.exists():
            return DeploymentState(project=self.project)
        try:
            return DeploymentState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise ShiplineError(
                f"State file {self.path} is unreadable or corrupt; move it aside to start fresh",
                cause=exc,
            ) from exc

    def save(self, state: DeploymentState) -> Path:
        """Write the state file atomically."""
        state.updated_at = _now()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps(state.model_dump(mode="json"), indent=2, default=str),
            encoding="utf-8",
        )
        os.replace(tmp, self.path)
        logger.debug("state.saved", extra={"path": str(self.path)})
        return self.path

    def record_release(self, record: ReleaseRecord) -> DeploymentState:
        """Make *record* the current release; the old current becomes previous."""
        state = self.load()
        if state.current is not None and state.current.status == "deployed":
            state.previous = state.current
        state.current = record
        state._remember(record)
        self.save(state)
        logger.info(
            "state.release_recorded",
            extra={"project": self.project, "run_id": record.run_id, "status": record.status},
        )
        return state

    def mark_failed(self, run_id: str, image_ref: str, error: str, host: str = "local") -> DeploymentState:
        """Add a failed attempt to history without touching current/previous."""
        state = self.load()
        state._remember(
            ReleaseRecord(run_id=run_id, image_ref=image_ref, host=host, status="failed", error=error)
        )
        self.save(state)
        return state

    def record_rollback(self, run_id: str, image_ref: str, image_id: str | None, host: str = "local") -> DeploymentState:
        """Record that the previous release was restored."""
        state = self.load()
        record = ReleaseRecord(
            run_id=run_id, image_ref=image_ref, image_id=image_id, host=host, status="rolled_back",
        )
        state.current = record
        state.previous = None
        state._remember(record)
        self.save(state)
        return state

    def current_release(self) -> ReleaseRecord | None:
        return self.load().current

    def previous_release(self) -> ReleaseRecord | None:
        return self.load().previous


__all__ = [
    "HISTORY_LIMIT",
    "DeploymentState",
    "ReleaseRecord",
    "StateStore",
]
