"""Build orchestration module.

This module handles:
- Source preflight and hashing
- Cache key computation
- Dockerfile rendering
- Running docker build and mapping failures to pipeline states
- Runtime image verification and manifest generation
- Build records
"""

from collab_imagegen.builds.models import Artifact, BuildRecord

__all__ = ["Artifact", "BuildRecord"]
