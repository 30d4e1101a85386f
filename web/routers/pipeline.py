"""Pipeline definition endpoints.

- GET /pipeline - Effective pipeline definition
- GET /pipeline/dockerfile - Rendered Dockerfile
"""

from typing import Any

import yaml
from fastapi import APIRouter, HTTPException
from fastapi import status as http_status
from fastapi.responses import PlainTextResponse

from collab_imagegen.builds.dockerfile import render_dockerfile
from collab_imagegen.config import get_settings
from collab_imagegen.pipeline.io import pipeline_to_dict, resolve_pipeline
from collab_imagegen.pipeline.schema import PipelineSchema
from collab_imagegen.pipeline.steps import PipelineDefinitionError

router = APIRouter()


def _effective_pipeline() -> PipelineSchema:
    """Load the configured pipeline, mapping load errors to HTTP errors."""
    path = get_settings().pipeline_file
    try:
        return resolve_pipeline(path)
    except FileNotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": "pipeline_not_found",
                "message": f"Pipeline file not found: {path}",
            },
        ) from None
    except (ValueError, yaml.YAMLError) as e:
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "invalid_pipeline", "message": str(e)},
        ) from None


@router.get("")
def get_pipeline() -> dict[str, Any]:
    """Get the effective pipeline definition.

    Returns:
        Pipeline definition as JSON.
    """
    return pipeline_to_dict(_effective_pipeline())


@router.get("/dockerfile", response_class=PlainTextResponse)
def get_dockerfile() -> str:
    """Render the effective pipeline as a Dockerfile.

    Returns:
        Dockerfile text.
    """
    try:
        return render_dockerfile(_effective_pipeline())
    except PipelineDefinitionError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": e.code, "message": str(e)},
        ) from None
