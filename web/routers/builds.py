"""Build record endpoints.

- GET /builds - List builds
- GET /builds/{id} - Get build by ID
- GET /builds/{id}/artifacts - Get verified image contents for a build

Builds are started from the CLI; this router is read-only.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from collab_imagegen.builds.models import Artifact
from collab_imagegen.builds.service import (
    BuildNotFoundError,
    get_build,
    get_build_artifacts,
    list_builds,
)
from collab_imagegen.types import BuildStatus
from web.deps import get_db

router = APIRouter()


def _build_to_dict(build: Any) -> dict[str, Any]:
    """Convert a build record to a dictionary."""
    return {
        "id": build.id,
        "pipeline": build.pipeline_name,
        "status": build.status,
        "image_tag": build.image_tag,
        "image_id": build.image_id,
        "cache_key": build.cache_key,
        "panic_policy": build.panic_policy,
        "build_identifier": build.build_identifier,
        "failed_state": build.failed_state,
        "requested_at": build.requested_at.isoformat() if build.requested_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
        "log_path": build.log_path,
        "manifest_path": build.manifest_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "artifact_count": len(build.artifacts),
    }


def _artifact_to_dict(artifact: Artifact) -> dict[str, Any]:
    """Convert an artifact to a dictionary."""
    return {
        "id": artifact.id,
        "build_id": artifact.build_id,
        "kind": artifact.kind,
        "path": artifact.path,
        "env_var": artifact.env_var,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "mode": f"{artifact.mode:o}",
    }


def _not_found(build_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "build_not_found",
            "message": f"Build not found: {build_id}",
        },
    )


@router.get("")
def list_builds_endpoint(
    pipeline: str | None = Query(None, description="Filter by pipeline name"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records.

    Args:
        pipeline: Filter by pipeline name.
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of build records, newest first.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. "
                    "Valid values: pending, running, succeeded, failed",
                },
            ) from None

    builds = list_builds(db, pipeline_name=pipeline, status=status_filter, limit=limit)
    return [_build_to_dict(b) for b in builds]


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID.

    Raises:
        HTTPException: If build not found.
    """
    try:
        build = get_build(db, build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    return _build_to_dict(build)


@router.get("/{build_id}/artifacts")
def get_build_artifacts_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get the verified files of a build's runtime image.

    Raises:
        HTTPException: If build not found.
    """
    try:
        artifacts = get_build_artifacts(db, build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    return [_artifact_to_dict(a) for a in artifacts]
