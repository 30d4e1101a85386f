"""Configuration settings for collab_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from collab_imagegen.pipeline.schema import validate_image_repository


def _default_state_dir() -> Path:
    """Return the default state directory."""
    return Path.home() / ".local" / "share" / "collab-imagegen"


def _default_builds_dir() -> Path:
    """Return the default directory for per-build logs and manifests."""
    return _default_state_dir() / "builds"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_state_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the COLLAB_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="COLLAB_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    state_dir: Path = Field(
        default_factory=_default_state_dir,
        description="Root directory for locks and local state",
    )
    builds_dir: Path = Field(
        default_factory=_default_builds_dir,
        description="Directory for build logs, Dockerfiles and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    # Pipeline
    pipeline_file: Path | None = Field(
        default=None,
        description="Pipeline definition file (built-in default when unset)",
    )

    # Docker
    docker_bin: str = Field(
        default="docker",
        description="Docker CLI executable",
    )
    image_repository: str | None = Field(
        default=None,
        description="Override for the pipeline's image repository",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    verify_images: bool = Field(
        default=True,
        description="Inspect and verify runtime images before promoting them",
    )
    allow_empty_assets: bool = Field(
        default=False,
        description="Accept asset directories that contain no files",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for docker build",
    )
    docker_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for inspect/export/tag docker commands",
    )
    lock_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout waiting for cache locks held by another build",
    )

    @field_validator("image_repository")
    @classmethod
    def validate_repository(cls, v: str | None) -> str | None:
        """Validate the repository override, when set."""
        if v is None:
            return v
        return validate_image_repository(v)

    @property
    def lock_dir(self) -> Path:
        """Directory holding per-cache lock files."""
        return self.state_dir / "locks"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
