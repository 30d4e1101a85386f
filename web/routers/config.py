"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from collab_imagegen.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "state_dir": str(settings.state_dir),
        "builds_dir": str(settings.builds_dir),
        "db_url": settings.db_url,
        "pipeline_file": (
            str(settings.pipeline_file) if settings.pipeline_file else None
        ),
        "docker_bin": settings.docker_bin,
        "image_repository": settings.image_repository,
        "log_level": settings.log_level,
        "verify_images": settings.verify_images,
        "allow_empty_assets": settings.allow_empty_assets,
        "build_timeout": settings.build_timeout,
        "docker_timeout": settings.docker_timeout,
        "lock_timeout": settings.lock_timeout,
    }
