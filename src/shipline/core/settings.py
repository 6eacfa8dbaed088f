"""
Tool-wide settings for shipline.

``ShiplineSettings`` is the single validated, cached source of truth for
values that apply to every command (log level, where state and run
artifacts live, which docker/compose binaries to call). Per-deployment
values (image, host, health URL) live in
:class:`shipline.deploy.config.PipelineConfig` instead.

All fields can be set via ``SHIPLINE_*`` environment variables or a
``.env`` file in the working directory.

Tags:
    configuration, settings, pydantic-settings, caching
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ShiplineSettings(BaseSettings):
    """Tool-wide configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHIPLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console", "auto"] = Field(default="auto")

    # ── Paths ────────────────────────────────────────────────────
    state_dir: Path = Field(
        default=Path(".shipline"),
        description="Directory for release state files",
    )
    output_dir: Path = Field(
        default=Path("deploy-results"),
        description="Directory for per-run logs and summaries",
    )

    # ── External tools ───────────────────────────────────────────
    docker_bin: str = Field(default="docker")
    compose_command: str = Field(
        default="docker compose",
        description="'docker compose' (v2 plugin) or 'docker-compose' (v1)",
    )
    ssh_bin: str = Field(default="ssh")
    scp_bin: str = Field(default="scp")

    # ── Timeouts ─────────────────────────────────────────────────
    command_timeout_seconds: int = Field(default=600, ge=1)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @property
    def json_logs(self) -> bool | None:
        """``None`` lets the logger auto-detect from the terminal."""
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


@lru_cache(maxsize=1)
def get_settings() -> ShiplineSettings:
    """Return the cached settings instance."""
    return ShiplineSettings()


def reset_settings() -> None:
    """Drop the cached settings (tests, or after changing the environment)."""
    get_settings.cache_clear()


__all__ = ["ShiplineSettings", "get_settings", "reset_settings"]
