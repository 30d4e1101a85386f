"""Build service module.

This module provides the high-level pipeline API:
- run_pipeline(): Main entry point - preflight, render, build, verify, promote
- Locking of the builder cache scopes shared between concurrent runs
- Build record and artifact persistence
- Build record queries

A run builds its runtime image under a candidate tag and only re-tags it
to the final reference once every step has passed, so a failed run never
leaves a partial image under the final tag.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from collab_imagegen.builds.artifacts import (
    ImageConfig,
    ImageVerificationError,
    generate_manifest,
    parse_image_config,
    read_image_files,
    verify_image,
    write_manifest,
)
from collab_imagegen.builds.cache_key import (
    cache_mount_ids,
    compute_cache_key,
    create_build_inputs,
)
from collab_imagegen.builds.dockerfile import render_dockerfile, write_dockerfile
from collab_imagegen.builds.models import Artifact, BuildRecord
from collab_imagegen.builds.runner import (
    BuildExecutionError,
    DockerCommandError,
    classify_build_failure,
    compose_build_args,
    compose_build_command,
    export_image_filesystem,
    inspect_image,
    remove_image,
    run_build,
    tag_image,
)
from collab_imagegen.builds.sources import SourceCheckError, SourceSnapshot, preflight
from collab_imagegen.config import get_settings
from collab_imagegen.pipeline.schema import validate_image_repository
from collab_imagegen.pipeline.steps import (
    PipelineDefinitionError,
    Stage,
    compose_stages,
)
from collab_imagegen.types import (
    ArtifactInfo,
    BuildStatus,
    OperationResult,
    PipelineState,
)

if TYPE_CHECKING:
    from collab_imagegen.config import Settings
    from collab_imagegen.pipeline.schema import BuildParameters, PipelineSchema

logger = logging.getLogger(__name__)

_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")
_TAG_VALID = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

# Where a verification failure points in the pipeline
_VERIFY_FAILURE_STATES: dict[str, PipelineState] = {
    "entrypoint_mismatch": PipelineState.ENTRYPOINT_DECLARE,
    "asset_env_missing": PipelineState.ENV_CONFIGURE,
    "asset_env_mismatch": PipelineState.ENV_CONFIGURE,
    "build_identifier_mismatch": PipelineState.ENV_CONFIGURE,
    "binary_missing": PipelineState.ARTIFACT_COPY,
    "binary_not_executable": PipelineState.ARTIFACT_COPY,
    "unexpected_executables": PipelineState.ARTIFACT_COPY,
    "asset_missing": PipelineState.ARTIFACT_COPY,
    "asset_mismatch": PipelineState.ARTIFACT_COPY,
    "build_leak": PipelineState.ARTIFACT_COPY,
}


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class BuildServiceError(Exception):
    """Base error for build service operations."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


@contextmanager
def build_lock(
    lock_dir: Path,
    name: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive file lock.

    Args:
        lock_dir: Directory for lock files.
        name: Lock name (a cache id).
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_name = _TAG_INVALID.sub("_", name)[:64]
    lock_file = lock_dir / f"cache_{safe_name}.lock"

    logger.debug("Acquiring lock: %s", name)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for lock on cache {name}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Lock acquired: %s", name)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Lock released: %s", name)
        os.close(fd)


@contextmanager
def cache_locks(
    lock_dir: Path,
    cache_ids: list[str],
    timeout: float | None = None,
) -> Iterator[None]:
    """Hold a lock on every cache id, acquired in sorted order.

    Args:
        lock_dir: Directory for lock files.
        cache_ids: Cache ids the run writes to.
        timeout: Per-lock acquisition timeout in seconds.

    Yields:
        None once every lock is held.
    """
    with ExitStack() as stack:
        for cache_id in sorted(set(cache_ids)):
            stack.enter_context(build_lock(lock_dir, cache_id, timeout=timeout))
        yield


def default_image_tag(
    pipeline: PipelineSchema,
    parameters: BuildParameters,
    repository: str | None = None,
) -> str:
    """Return the final image reference for a run.

    The tag is the build identifier mapped onto the docker tag alphabet,
    or ``latest`` when no identifier was given.
    """
    repo = repository or pipeline.image_repository
    tag = _TAG_INVALID.sub("-", parameters.build_identifier).lstrip(".-")[:128]
    return f"{repo}:{tag or 'latest'}"


def split_image_reference(ref: str) -> tuple[str, str | None]:
    """Split an image reference into (repository, tag or None)."""
    name, sep, tag = ref.rpartition(":")
    # A colon followed by a path is a registry port, not a tag
    if sep and name and "/" not in tag:
        return name, tag
    return ref, None


def _validate_image_reference(ref: str) -> None:
    repository, tag = split_image_reference(ref)
    if tag is not None and not _TAG_VALID.match(tag):
        raise BuildServiceError(
            f"Invalid image reference: {ref!r}", code="invalid_image_reference"
        )
    try:
        validate_image_repository(repository)
    except ValueError as e:
        raise BuildServiceError(
            f"Invalid image reference: {ref!r}: {e}", code="invalid_image_reference"
        ) from e


def _candidate_tag(final_tag: str) -> str:
    repository, _ = split_image_reference(final_tag)
    return f"{repository}:candidate-{uuid.uuid4().hex[:8]}"


@dataclass
class _RunContext:
    """State carried between the steps of one run."""

    session: Session
    build: BuildRecord
    pipeline: PipelineSchema
    parameters: BuildParameters
    settings: Settings
    source_dir: Path
    build_dir: Path
    final_tag: str
    no_cache: bool
    verify: bool
    snapshot: SourceSnapshot | None = None
    build_inputs: dict[str, Any] = field(default_factory=dict)
    stages: list[Stage] = field(default_factory=list)
    dockerfile_path: Path | None = None
    candidate_built: bool = False
    image_config: ImageConfig | None = None
    artifacts: list[ArtifactInfo] = field(default_factory=list)


Step = Callable[[_RunContext], OperationResult]


def _failure(
    message: str,
    code: str,
    state: PipelineState | None = None,
    log_path: str | None = None,
) -> OperationResult:
    details: dict[str, object] = {}
    if state is not None:
        details["state"] = state.value
    return OperationResult(
        success=False, message=message, code=code, log_path=log_path, details=details
    )


def _step_preflight(ctx: _RunContext) -> OperationResult:
    try:
        snapshot = preflight(
            ctx.source_dir, ctx.pipeline, ctx.settings.allow_empty_assets
        )
    except SourceCheckError as e:
        # Asset directories are consumed by the runtime stage's copy step
        if e.code.startswith("asset_"):
            state = PipelineState.ARTIFACT_COPY
        else:
            state = PipelineState.SOURCE_OVERLAY
        return _failure(str(e), e.code, state)

    inputs = create_build_inputs(ctx.pipeline, ctx.parameters, snapshot)
    ctx.snapshot = snapshot
    ctx.build_inputs = inputs.to_dict()
    ctx.build.input_snapshot = ctx.build_inputs
    ctx.build.cache_key = compute_cache_key(inputs)
    ctx.session.flush()
    return OperationResult(success=True, message="Source preflight passed")


def _step_render(ctx: _RunContext) -> OperationResult:
    try:
        ctx.stages = compose_stages(ctx.pipeline)
    except PipelineDefinitionError as e:
        return _failure(str(e), e.code)

    text = render_dockerfile(ctx.pipeline, ctx.stages)
    ctx.dockerfile_path = write_dockerfile(text, ctx.build_dir / "Dockerfile")
    ctx.build.dockerfile_path = str(ctx.dockerfile_path)
    ctx.session.flush()
    return OperationResult(success=True, message="Rendered Dockerfile")


def _step_build(ctx: _RunContext) -> OperationResult:
    assert ctx.dockerfile_path is not None
    candidate = ctx.build.candidate_tag or ""
    cmd = compose_build_command(
        dockerfile=ctx.dockerfile_path,
        context_dir=ctx.source_dir,
        tag=candidate,
        target_stage=ctx.pipeline.runtime.name,
        build_args=compose_build_args(ctx.pipeline, ctx.parameters),
        no_cache=ctx.no_cache,
        docker_bin=ctx.settings.docker_bin,
    )
    try:
        result = run_build(
            cmd,
            context_dir=ctx.source_dir,
            build_dir=ctx.build_dir,
            timeout=ctx.settings.build_timeout,
        )
    except BuildExecutionError as e:
        return _failure(str(e), e.code, log_path=str(ctx.build_dir / "build.log"))

    ctx.build.log_path = str(result.log_path)
    ctx.session.flush()
    if not result.success:
        log_text = result.log_path.read_text(encoding="utf-8", errors="replace")
        state, kind = classify_build_failure(log_text, ctx.stages)
        message = result.error_message or "Build failed"
        if state is not None:
            message = f"{message} in {state.value}"
        return _failure(message, kind.value, state, log_path=str(result.log_path))

    ctx.candidate_built = True
    return OperationResult(
        success=True,
        message=f"Built {candidate} in {result.duration_seconds:.1f}s",
        log_path=str(result.log_path),
    )


def _step_inspect(ctx: _RunContext) -> OperationResult:
    candidate = ctx.build.candidate_tag or ""
    try:
        data = inspect_image(
            candidate, ctx.settings.docker_bin, ctx.settings.docker_timeout
        )
    except DockerCommandError as e:
        return _failure(str(e), e.code)
    ctx.image_config = parse_image_config(data)
    ctx.build.image_id = ctx.image_config.image_id
    ctx.session.flush()
    return OperationResult(success=True, message=f"Inspected {candidate}")


def _step_verify(ctx: _RunContext) -> OperationResult:
    if not ctx.verify:
        logger.warning("Skipping verification of %s", ctx.build.candidate_tag)
        return OperationResult(success=True, message="Verification skipped")

    assert ctx.image_config is not None and ctx.snapshot is not None
    rootfs = ctx.build_dir / "rootfs.tar"
    try:
        export_image_filesystem(
            ctx.build.candidate_tag or "",
            rootfs,
            ctx.settings.docker_bin,
            ctx.settings.docker_timeout,
        )
        files, entries = read_image_files(rootfs)
        ctx.artifacts = verify_image(
            ctx.pipeline,
            ctx.image_config,
            files,
            entries,
            ctx.snapshot,
            build_identifier=ctx.parameters.build_identifier,
        )
    except DockerCommandError as e:
        return _failure(str(e), e.code)
    except ImageVerificationError as e:
        return _failure(str(e), e.code, _VERIFY_FAILURE_STATES.get(e.code))
    finally:
        rootfs.unlink(missing_ok=True)

    return OperationResult(
        success=True, message=f"Verified {len(ctx.artifacts)} files in image"
    )


def _step_promote(ctx: _RunContext) -> OperationResult:
    assert ctx.image_config is not None
    manifest = generate_manifest(
        artifacts=ctx.artifacts,
        build_id=ctx.build.id,
        cache_key=ctx.build.cache_key,
        pipeline_name=ctx.pipeline.name,
        image={
            "id": ctx.image_config.image_id,
            "tag": ctx.final_tag,
            "entrypoint": ctx.image_config.entrypoint,
            "env": ctx.image_config.env,
        },
        build_inputs=ctx.build_inputs,
    )
    manifest_path = write_manifest(manifest, ctx.build_dir / "manifest.json")
    ctx.build.manifest_path = str(manifest_path)
    for artifact_info in ctx.artifacts:
        _create_artifact_record(ctx.session, ctx.build, artifact_info)
    ctx.session.flush()

    # Tagging publishes the image; nothing fallible may follow it
    try:
        tag_image(
            ctx.build.candidate_tag or "",
            ctx.final_tag,
            ctx.settings.docker_bin,
            ctx.settings.docker_timeout,
        )
    except DockerCommandError as e:
        return _failure(str(e), e.code)
    ctx.build.image_tag = ctx.final_tag
    return OperationResult(success=True, message=f"Promoted to {ctx.final_tag}")


def _create_build_record(
    session: Session,
    pipeline: PipelineSchema,
    parameters: BuildParameters,
) -> BuildRecord:
    """Create a new BuildRecord in pending state."""
    build = BuildRecord(
        pipeline_name=pipeline.name,
        panic_policy=parameters.effective_panic_policy(pipeline).value,
        build_identifier=parameters.build_identifier,
        status=BuildStatus.PENDING.value,
    )
    session.add(build)
    session.flush()
    return build


def _create_artifact_record(
    session: Session,
    build: BuildRecord,
    artifact_info: ArtifactInfo,
) -> Artifact:
    """Create an Artifact record from ArtifactInfo."""
    artifact = Artifact(
        build_id=build.id,
        kind=artifact_info.kind,
        path=artifact_info.path,
        env_var=artifact_info.env_var,
        size_bytes=artifact_info.size_bytes,
        sha256=artifact_info.sha256,
        mode=artifact_info.mode,
    )
    build.artifacts.append(artifact)
    session.add(artifact)
    return artifact


def _run_steps(ctx: _RunContext, steps: list[Step]) -> OperationResult:
    """Run steps in order, stopping at the first failure.

    An unexpected exception inside a step fails the run instead of
    escaping, so the record never stays running.
    """
    result = OperationResult(success=True, message="No steps")
    for step in steps:
        try:
            result = step(ctx)
        except Exception as e:
            logger.exception("Build %d: unexpected error", ctx.build.id)
            return _failure(f"{type(e).__name__}: {e}", "internal_error")
        if not result.success:
            return result
        logger.info("Build %d: %s", ctx.build.id, result.message)
    return result


def run_pipeline(
    session: Session,
    pipeline: PipelineSchema,
    source_dir: Path,
    parameters: BuildParameters,
    settings: Settings | None = None,
    tag: str | None = None,
    no_cache: bool = False,
    verify: bool | None = None,
) -> tuple[BuildRecord, OperationResult]:
    """Run the two-stage pipeline against a source tree.

    This is the main entry point for building an image. It:
    1. Checks the source tree, override and asset directories
    2. Composes, validates and renders the Dockerfile
    3. Takes the cache locks and runs docker build under a candidate tag
    4. Inspects and (optionally) verifies the candidate image
    5. Persists the manifest and artifacts, then promotes the candidate

    Steps are not retried. The candidate tag is always removed.

    Args:
        session: Database session.
        pipeline: Pipeline definition.
        source_dir: Source tree (the build context).
        parameters: Invocation parameters.
        settings: Application settings.
        tag: Final image reference; derived from the build identifier if omitted.
        no_cache: Disable the docker layer cache.
        verify: Verify the image contents; defaults to settings.verify_images.

    Returns:
        Tuple of (BuildRecord, result of the last step run).

    Raises:
        BuildServiceError: If the image reference is invalid.
    """
    if settings is None:
        settings = get_settings()
    if verify is None:
        verify = settings.verify_images
    if tag is None:
        tag = default_image_tag(pipeline, parameters, settings.image_repository)
    _validate_image_reference(tag)

    build = _create_build_record(session, pipeline, parameters)
    build.candidate_tag = _candidate_tag(tag)
    build_dir = settings.builds_dir / f"{build.id:08d}_{uuid.uuid4().hex[:8]}"
    build_dir.mkdir(parents=True, exist_ok=True)
    build.build_dir = str(build_dir)
    build.mark_running()
    session.flush()
    logger.info("Created build record %d for pipeline %s", build.id, pipeline.name)

    ctx = _RunContext(
        session=session,
        build=build,
        pipeline=pipeline,
        parameters=parameters,
        settings=settings,
        source_dir=source_dir,
        build_dir=build_dir,
        final_tag=tag,
        no_cache=no_cache,
        verify=verify,
    )

    try:
        result = _run_steps(ctx, [_step_preflight, _step_render])
        if result.success:
            try:
                with cache_locks(
                    settings.lock_dir,
                    cache_mount_ids(pipeline),
                    timeout=settings.lock_timeout,
                ):
                    result = _run_steps(
                        ctx,
                        [_step_build, _step_inspect, _step_verify, _step_promote],
                    )
            except TimeoutError as e:
                result = _failure(str(e), "lock_timeout")
    finally:
        if ctx.candidate_built:
            _remove_candidate(ctx)

    if result.success:
        build.mark_succeeded()
        logger.info(
            "Build %d succeeded: %s (%d verified files)",
            build.id,
            build.image_tag,
            len(ctx.artifacts),
        )
    else:
        _discard_outputs(build)
        state = result.details.get("state")
        build.mark_failed(
            error_type=result.code,
            message=result.message,
            state=str(state) if state else None,
        )
        if result.log_path and not build.log_path:
            build.log_path = result.log_path
        logger.error("Build %d failed (%s): %s", build.id, result.code, result.message)
    session.flush()
    return build, result


def _discard_outputs(build: BuildRecord) -> None:
    """Drop the manifest and artifact rows of a run that was not promoted."""
    build.artifacts.clear()
    if build.manifest_path:
        Path(build.manifest_path).unlink(missing_ok=True)
        build.manifest_path = None


def _remove_candidate(ctx: _RunContext) -> None:
    candidate = ctx.build.candidate_tag or ""
    try:
        remove_image(candidate, ctx.settings.docker_bin, ctx.settings.docker_timeout)
    except DockerCommandError as e:
        logger.warning("Could not remove candidate image %s: %s", candidate, e)


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def get_build_or_none(session: Session, build_id: int) -> BuildRecord | None:
    """Get a build record by ID, or None if not found."""
    return session.get(BuildRecord, build_id)


def list_builds(
    session: Session,
    pipeline_name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        pipeline_name: Filter by pipeline name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if pipeline_name is not None:
        stmt = stmt.where(BuildRecord.pipeline_name == pipeline_name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_build_artifacts(session: Session, build_id: int) -> list[Artifact]:
    """Get artifacts for a build.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = get_build(session, build_id)
    return list(build.artifacts)


__all__ = [
    "BuildNotFoundError",
    "BuildServiceError",
    "build_lock",
    "cache_locks",
    "default_image_tag",
    "get_build",
    "get_build_artifacts",
    "get_build_or_none",
    "list_builds",
    "run_pipeline",
    "split_image_reference",
]
