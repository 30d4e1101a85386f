"""Cache key computation for pipeline runs.

This module handles:
- Canonical input snapshot creation from the pipeline and parameters
- Deterministic hash computation over normalized inputs
- Listing the cache mount ids a run will write to

The cache key identifies the inputs of a build record; it does not cover
the whole source tree, which is identified by the build identifier.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from collab_imagegen.builds.sources import SourceSnapshot
from collab_imagegen.pipeline.io import pipeline_to_dict
from collab_imagegen.pipeline.schema import BuildParameters, PipelineSchema

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


@dataclass
class BuildInputs:
    """Canonical representation of all pipeline inputs.

    Attributes:
        schema_version: Version of cache key schema.
        pipeline_snapshot: Normalized pipeline definition.
        override_sha256: Hash of the configuration override file.
        asset_hashes: Tree hash per asset destination.
        panic_policy: Panic policy the binary is compiled with.
        build_identifier: Opaque build identifier.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    pipeline_snapshot: dict[str, Any] = field(default_factory=dict)
    override_sha256: str = ""
    asset_hashes: dict[str, str] = field(default_factory=dict)
    panic_policy: str = ""
    build_identifier: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def create_build_inputs(
    pipeline: PipelineSchema,
    parameters: BuildParameters,
    snapshot: SourceSnapshot,
) -> BuildInputs:
    """Create canonical build inputs.

    Args:
        pipeline: Pipeline definition.
        parameters: Invocation parameters.
        snapshot: Source preflight snapshot.

    Returns:
        BuildInputs instance with all normalized inputs.
    """
    return BuildInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        pipeline_snapshot=pipeline_to_dict(pipeline),
        override_sha256=snapshot.override_sha256,
        asset_hashes=dict(sorted(snapshot.asset_hashes.items())),
        panic_policy=parameters.effective_panic_policy(pipeline).value,
        build_identifier=parameters.build_identifier,
    )


def compute_cache_key(inputs: BuildInputs) -> str:
    """Compute a cache key hash from build inputs.

    Args:
        inputs: BuildInputs instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_bytes = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_bytes}"


def cache_mount_ids(pipeline: PipelineSchema) -> list[str]:
    """Return the sorted cache ids a run of this pipeline writes to.

    Sorted order is the lock acquisition order.
    """
    return sorted({c.id for c in pipeline.builder.caches})


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "BuildInputs",
    "cache_mount_ids",
    "compute_cache_key",
    "create_build_inputs",
]
