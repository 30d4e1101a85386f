"""Shared type definitions for collab_imagegen.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PanicPolicy(str, Enum):
    """What the compiled binary does on an unrecoverable internal error."""

    UNWIND = "unwind"
    ABORT = "abort"


class CacheKind(str, Enum):
    """Purpose of a builder cache mount."""

    PACKAGE_MANAGER = "package-manager"
    REGISTRY = "registry"
    GIT = "git"
    BUILD_OUTPUT = "build-output"


class PipelineState(str, Enum):
    """Linear state machine of the two-stage pipeline.

    Members are declared in execution order; ``PIPELINE_ORDER`` gives the
    index used to check that stages never move backwards.
    """

    START = "start"
    SOURCE_OVERLAY = "builder:source-overlay"
    BUILDER_DEPENDENCY_INSTALL = "builder:dependency-install"
    COMPILE = "builder:compile"
    ARTIFACT_EXTRACT = "builder:artifact-extract"
    BASE_SELECT = "runtime:base-select"
    RUNTIME_DEPENDENCY_INSTALL = "runtime:dependency-install"
    ARTIFACT_COPY = "runtime:artifact-copy"
    ENV_CONFIGURE = "runtime:env-configure"
    ENTRYPOINT_DECLARE = "runtime:entrypoint-declare"
    DONE = "done"


PIPELINE_ORDER: dict[PipelineState, int] = {
    state: index for index, state in enumerate(PipelineState)
}


class FailureKind(str, Enum):
    """Classification of a failed docker build."""

    SOURCE_OVERLAY = "source_overlay_failed"
    DEPENDENCY_INSTALL = "dependency_install_failed"
    COMPILE = "compile_failed"
    ARTIFACT_TRANSFER = "artifact_transfer_failed"
    BASE_IMAGE = "base_image_unavailable"
    UNKNOWN = "build_failed"


FAILURE_BY_STATE: dict[PipelineState, FailureKind] = {
    PipelineState.SOURCE_OVERLAY: FailureKind.SOURCE_OVERLAY,
    PipelineState.BUILDER_DEPENDENCY_INSTALL: FailureKind.DEPENDENCY_INSTALL,
    PipelineState.COMPILE: FailureKind.COMPILE,
    PipelineState.ARTIFACT_EXTRACT: FailureKind.ARTIFACT_TRANSFER,
    PipelineState.BASE_SELECT: FailureKind.BASE_IMAGE,
    PipelineState.RUNTIME_DEPENDENCY_INSTALL: FailureKind.DEPENDENCY_INSTALL,
    PipelineState.ARTIFACT_COPY: FailureKind.ARTIFACT_TRANSFER,
}


@dataclass
class OperationResult:
    """Result of one pipeline step."""

    success: bool
    message: str
    code: str | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)


@dataclass
class ArtifactInfo:
    """Information about a file shipped in the runtime image."""

    path: str
    size_bytes: int
    sha256: str
    mode: int
    kind: str
    env_var: str | None = None


__all__ = [
    "FAILURE_BY_STATE",
    "PIPELINE_ORDER",
    "ArtifactInfo",
    "BuildStatus",
    "CacheKind",
    "FailureKind",
    "OperationResult",
    "PanicPolicy",
    "PipelineState",
]
