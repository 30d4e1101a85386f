"""Build runner for executing docker commands.

This module handles:
- Composing `docker build` commands from a pipeline and its parameters
- Executing builds with subprocess, capturing output to log files
- Enforcing build timeouts
- Mapping a failed BuildKit step back to its pipeline state
- Thin wrappers for image inspect/export/tag/remove
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from collab_imagegen.builds.dockerfile import render_instruction
from collab_imagegen.pipeline.schema import BuildParameters, PipelineSchema
from collab_imagegen.pipeline.steps import FromImage, Stage
from collab_imagegen.types import FAILURE_BY_STATE, FailureKind, PipelineState

logger = logging.getLogger(__name__)

# BuildKit plain progress: "#12 [builder 6/9] RUN cargo build ..."
_VERTEX_HEADER = re.compile(r"^#(\d+) \[(\S+)\s+\d+/\d+\] (.+)$")
_VERTEX_ERROR = re.compile(r"^#(\d+) ERROR\b")
_LOAD_METADATA = re.compile(r"^#(\d+) \[internal\] load metadata for (\S+)$")


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class DockerCommandError(Exception):
    """Raised when an auxiliary docker command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "docker_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class BuildResult:
    """Result of a docker build execution.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Wall-clock duration of the build."""
        return (self.finished_at - self.started_at).total_seconds()


def compose_build_args(
    pipeline: PipelineSchema,
    parameters: BuildParameters,
) -> dict[str, str]:
    """Compose build arguments for one invocation.

    The panic argument is only passed when a policy was chosen, so an
    omitted policy falls back to the Dockerfile default.

    Args:
        pipeline: Pipeline definition.
        parameters: Invocation parameters.

    Returns:
        Mapping of build argument name to value.
    """
    args: dict[str, str] = {}
    if parameters.panic_policy is not None:
        args[pipeline.builder.panic_arg] = parameters.panic_policy.value
    if parameters.build_identifier:
        args[pipeline.parameters.build_identifier_arg] = parameters.build_identifier
    return args


def compose_build_command(
    dockerfile: Path,
    context_dir: Path,
    tag: str,
    target_stage: str,
    build_args: dict[str, str] | None = None,
    no_cache: bool = False,
    docker_bin: str = "docker",
) -> list[str]:
    """Compose the `docker build` command.

    Args:
        dockerfile: Rendered Dockerfile.
        context_dir: Build context (the source tree).
        tag: Tag for the built image.
        target_stage: Final stage to build.
        build_args: Build arguments.
        no_cache: Disable the layer cache (cache mounts are kept).
        docker_bin: Docker CLI executable.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [
        docker_bin,
        "build",
        "--file",
        str(dockerfile),
        "--target",
        target_stage,
        "--tag",
        tag,
        "--progress",
        "plain",
    ]
    if no_cache:
        cmd.append("--no-cache")
    for name, value in sorted((build_args or {}).items()):
        cmd.extend(["--build-arg", f"{name}={value}"])
    cmd.append(str(context_dir))
    return cmd


def run_build(
    cmd: list[str],
    context_dir: Path,
    build_dir: Path,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> BuildResult:
    """Execute a docker build.

    Args:
        cmd: Command from compose_build_command.
        context_dir: Working directory for the build.
        build_dir: Directory for the build log.
        timeout: Build timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        BuildResult with execution details.

    Raises:
        BuildExecutionError: If the build times out or fails to start.
    """
    build_dir.mkdir(parents=True, exist_ok=True)
    log_path = build_dir / "build.log"

    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)
    logger.info("Build context: %s", context_dir)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    env = dict(os.environ)
    env["DOCKER_BUILDKIT"] = "1"
    if env_override:
        env.update(env_override)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {context_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=context_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Build failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Build timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise BuildExecutionError(
            error_message,
            exit_code=-1,
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute build: {e}"
        logger.error(error_message)
        raise BuildExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return BuildResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def _normalize(text: str) -> str:
    return " ".join(text.replace("\\\n", " ").split())


def _same_image(declared: str, resolved: str) -> bool:
    # BuildKit reports fully qualified names, e.g. docker.io/library/rust:1.81
    return resolved == declared or resolved.endswith("/" + declared)


def _match_instruction(stage: Stage, header: str) -> PipelineState | None:
    wanted = _normalize(header)
    for instruction in stage.instructions:
        rendered = _normalize(render_instruction(instruction))
        if (
            wanted == rendered
            or rendered.startswith(wanted)
            or wanted.startswith(rendered)
        ):
            return instruction.state
    return None


def classify_build_failure(
    log_text: str,
    stages: list[Stage],
) -> tuple[PipelineState | None, FailureKind]:
    """Map a failed build log to the pipeline state that failed.

    Args:
        log_text: BuildKit plain-progress output.
        stages: Stages the Dockerfile was rendered from.

    Returns:
        Tuple of (failed state or None, failure kind).
    """
    headers: dict[str, tuple[str, str]] = {}
    metadata: dict[str, str] = {}
    failed_vertices: list[str] = []

    for line in log_text.splitlines():
        line = line.rstrip()
        header = _VERTEX_HEADER.match(line)
        if header:
            headers[header.group(1)] = (header.group(2), header.group(3))
            continue
        load = _LOAD_METADATA.match(line)
        if load:
            metadata[load.group(1)] = load.group(2)
            continue
        error = _VERTEX_ERROR.match(line)
        if error:
            failed_vertices.append(error.group(1))

    by_name = {stage.name: stage for stage in stages}
    for vertex in failed_vertices:
        if vertex in metadata:
            # Base image could not be resolved; the first stage pulling it failed
            image = metadata[vertex]
            for stage in stages:
                for instruction in stage.instructions:
                    if isinstance(instruction, FromImage) and _same_image(
                        instruction.image, image
                    ):
                        return instruction.state, FailureKind.BASE_IMAGE
            return None, FailureKind.BASE_IMAGE
        if vertex not in headers:
            continue
        stage_name, instruction_text = headers[vertex]
        stage = by_name.get(stage_name)
        if stage is None:
            continue
        state = _match_instruction(stage, instruction_text)
        if state is not None:
            return state, FAILURE_BY_STATE.get(state, FailureKind.UNKNOWN)

    return None, FailureKind.UNKNOWN


def _run_docker(
    args: list[str],
    docker_bin: str = "docker",
    timeout: int | None = None,
) -> subprocess.CompletedProcess[str]:
    cmd = [docker_bin, *args]
    logger.debug("Running: %s", shlex.join(cmd))
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise DockerCommandError(
            f"docker {args[0]} timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise DockerCommandError(
            f"docker {' '.join(args[:2])} failed: {(e.stderr or '').strip()}",
            exit_code=e.returncode,
            code=f"docker_{args[0]}_error",
        ) from e
    except OSError as e:
        raise DockerCommandError(
            f"Failed to run docker: {e}",
            code="execution_error",
        ) from e


def inspect_image(
    ref: str,
    docker_bin: str = "docker",
    timeout: int | None = None,
) -> dict[str, Any]:
    """Return `docker image inspect` data for one image.

    Raises:
        DockerCommandError: If the image does not exist or docker fails.
    """
    result = _run_docker(["image", "inspect", ref], docker_bin, timeout)
    data = json.loads(result.stdout)
    if not data:
        raise DockerCommandError(f"Image not found: {ref}", code="image_not_found")
    inspected: dict[str, Any] = data[0]
    return inspected


def export_image_filesystem(
    ref: str,
    output_path: Path,
    docker_bin: str = "docker",
    timeout: int | None = None,
) -> Path:
    """Export the flattened filesystem of an image as a tar archive.

    A stopped container is created from the image, exported, and removed.

    Args:
        ref: Image reference.
        output_path: Destination tar file.
        docker_bin: Docker CLI executable.
        timeout: Per-command timeout in seconds.

    Returns:
        Path to the tar archive.

    Raises:
        DockerCommandError: If any docker command fails.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    created = _run_docker(["create", ref], docker_bin, timeout)
    container_id = created.stdout.strip()
    try:
        _run_docker(
            ["export", "--output", str(output_path), container_id],
            docker_bin,
            timeout,
        )
    finally:
        _run_docker(["rm", "--force", container_id], docker_bin, timeout)
    logger.info("Exported filesystem of %s to %s", ref, output_path)
    return output_path


def tag_image(
    source: str,
    target: str,
    docker_bin: str = "docker",
    timeout: int | None = None,
) -> None:
    """Tag an image under a new reference."""
    _run_docker(["tag", source, target], docker_bin, timeout)
    logger.info("Tagged %s as %s", source, target)


def remove_image(
    ref: str,
    docker_bin: str = "docker",
    timeout: int | None = None,
) -> None:
    """Remove an image reference (untag; layers stay if still referenced)."""
    _run_docker(["image", "rm", ref], docker_bin, timeout)
    logger.debug("Removed image reference %s", ref)


__all__ = [
    "BuildExecutionError",
    "BuildResult",
    "DockerCommandError",
    "classify_build_failure",
    "compose_build_args",
    "compose_build_command",
    "export_image_filesystem",
    "inspect_image",
    "remove_image",
    "run_build",
    "tag_image",
]
