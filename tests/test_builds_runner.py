"""Tests for builds/runner.py module.

Tests build command composition, failure classification and execution.
Uses mocked subprocess for docker invocations.
"""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from collab_imagegen.builds.runner import (
    BuildExecutionError,
    BuildResult,
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
from collab_imagegen.pipeline.schema import BuildParameters, PipelineSchema
from collab_imagegen.pipeline.steps import Stage, compose_stages
from collab_imagegen.types import FailureKind, PipelineState

COMPILE_HEADER = (
    "RUN --mount=type=cache,id=collab-script-node-modules,"
    "target=./script/node_modules,sharing=shared "
    "--mount=type=cache,id=collab-cargo-registry,"
    "target=/usr/local/cargo/registry,sharing=shared "
    "--mount=type=cache,id=collab-cargo-git,"
    "target=/usr/local/cargo/git,sharing=shared "
    "--mount=type=cache,id=collab-target,target=./target,sharing=shared "
    "cargo build --release --package collab --bin collab"
)


@pytest.fixture
def stages(pipeline: PipelineSchema) -> list[Stage]:
    """Composed stages of the built-in pipeline."""
    return compose_stages(pipeline)


def _log(*lines: str) -> str:
    return "\n".join(
        [
            "#0 building with \"default\" instance using docker driver",
            "#1 [internal] load build definition from Dockerfile",
            "#1 DONE 0.0s",
            *lines,
        ]
    )


class TestComposeBuildArgs:
    """Tests for compose_build_args function."""

    def test_defaults_pass_nothing(self, pipeline: PipelineSchema):
        """Should leave the Dockerfile defaults in place."""
        assert compose_build_args(pipeline, BuildParameters()) == {}

    def test_panic_policy(self, pipeline: PipelineSchema):
        """Should pass an explicit panic policy."""
        params = BuildParameters(panic_policy="unwind")
        assert compose_build_args(pipeline, params) == {
            "CARGO_PROFILE_RELEASE_PANIC": "unwind"
        }

    def test_build_identifier(self, pipeline: PipelineSchema):
        """Should pass the build identifier under its argument name."""
        params = BuildParameters(build_identifier="0123abc")
        assert compose_build_args(pipeline, params) == {"GITHUB_SHA": "0123abc"}


class TestComposeBuildCommand:
    """Tests for compose_build_command function."""

    def test_basic(self, tmp_path: Path):
        """Should target the runtime stage with plain progress."""
        cmd = compose_build_command(
            tmp_path / "Dockerfile", tmp_path / "src", "collab:candidate", "runtime"
        )
        assert cmd == [
            "docker",
            "build",
            "--file",
            str(tmp_path / "Dockerfile"),
            "--target",
            "runtime",
            "--tag",
            "collab:candidate",
            "--progress",
            "plain",
            str(tmp_path / "src"),
        ]

    def test_build_args_sorted(self, tmp_path: Path):
        """Should pass build args in sorted order before the context."""
        cmd = compose_build_command(
            tmp_path / "Dockerfile",
            tmp_path,
            "t",
            "runtime",
            build_args={"GITHUB_SHA": "abc", "CARGO_PROFILE_RELEASE_PANIC": "abort"},
        )
        assert cmd[-5:] == [
            "--build-arg",
            "CARGO_PROFILE_RELEASE_PANIC=abort",
            "--build-arg",
            "GITHUB_SHA=abc",
            str(tmp_path),
        ]

    def test_no_cache_and_docker_bin(self, tmp_path: Path):
        """Should honour no_cache and a custom docker binary."""
        cmd = compose_build_command(
            tmp_path / "Dockerfile",
            tmp_path,
            "t",
            "runtime",
            no_cache=True,
            docker_bin="/usr/bin/podman",
        )
        assert cmd[0] == "/usr/bin/podman"
        assert "--no-cache" in cmd


class TestRunBuild:
    """Tests for run_build function."""

    def test_success(self, tmp_path: Path):
        """Should write a log and report success."""
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            result = run_build(["docker", "build", "."], tmp_path, tmp_path / "b")

        assert isinstance(result, BuildResult)
        assert result.success
        assert result.exit_code == 0
        assert result.error_message is None
        assert result.duration_seconds >= 0
        log = result.log_path.read_text()
        assert "# Command: docker build ." in log
        assert "# Exit code: 0" in log

    def test_enables_buildkit(self, tmp_path: Path):
        """Should force BuildKit and apply overrides."""
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            run_build(
                ["docker", "build", "."],
                tmp_path,
                tmp_path / "b",
                env_override={"BUILDKIT_PROGRESS": "plain"},
            )
        env = mock_run.call_args.kwargs["env"]
        assert env["DOCKER_BUILDKIT"] == "1"
        assert env["BUILDKIT_PROGRESS"] == "plain"

    def test_failure(self, tmp_path: Path):
        """Should report a non-zero exit without raising."""
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1)
            result = run_build(["docker", "build", "."], tmp_path, tmp_path / "b")

        assert not result.success
        assert result.exit_code == 1
        assert "exit code 1" in (result.error_message or "")

    def test_timeout(self, tmp_path: Path):
        """Should raise build_timeout and note it in the log."""
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=5)
            with pytest.raises(BuildExecutionError) as exc_info:
                run_build(["docker"], tmp_path, tmp_path / "b", timeout=5)

        assert exc_info.value.code == "build_timeout"
        assert "TIMEOUT" in (tmp_path / "b" / "build.log").read_text()

    def test_missing_docker(self, tmp_path: Path):
        """Should raise execution_error when docker cannot start."""
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = FileNotFoundError("docker")
            with pytest.raises(BuildExecutionError) as exc_info:
                run_build(["docker"], tmp_path, tmp_path / "b")

        assert exc_info.value.code == "execution_error"


class TestClassifyBuildFailure:
    """Tests for classify_build_failure function."""

    def test_compile_failure(self, stages: list[Stage]):
        """Should map a failed cargo step to the compile state."""
        log = _log(
            f"#12 [builder 9/10] {COMPILE_HEADER}",
            "#12 41.20 error[E0425]: cannot find value `x` in this scope",
            '#12 ERROR: process "/bin/sh -c cargo build" did not complete '
            "successfully: exit code: 101",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.COMPILE,
            FailureKind.COMPILE,
        )

    def test_truncated_header(self, stages: list[Stage]):
        """Should match headers BuildKit shortened."""
        log = _log(
            f"#12 [builder 9/10] {COMPILE_HEADER[:60]}",
            "#12 ERROR: exit code: 101",
        )
        state, kind = classify_build_failure(log, stages)
        assert state is PipelineState.COMPILE
        assert kind is FailureKind.COMPILE

    def test_builder_dependency_install(self, stages: list[Stage]):
        """Should map a failed cmake install to builder dependency install."""
        log = _log(
            "#7 [builder 5/10] RUN apt-get update && "
            "apt-get install -y --no-install-recommends cmake",
            "#7 ERROR: exit code: 100",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.BUILDER_DEPENDENCY_INSTALL,
            FailureKind.DEPENDENCY_INSTALL,
        )

    def test_override_copy(self, stages: list[Stage]):
        """Should map a failed override copy to the source overlay state."""
        log = _log(
            "#6 [builder 4/10] COPY ./.cargo/collab-config.toml ./.cargo/config.toml",
            '#6 ERROR: failed to compute cache key: "/.cargo/collab-config.toml" '
            "not found",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.SOURCE_OVERLAY,
            FailureKind.SOURCE_OVERLAY,
        )

    def test_extract(self, stages: list[Stage]):
        """Should map a failed copy out of the cache to artifact extract."""
        log = _log(
            "#13 [builder 10/10] RUN --mount=type=cache,id=collab-target,"
            "target=./target,sharing=shared cp /app/target/release/collab /app/collab",
            "#13 ERROR: exit code: 1",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.ARTIFACT_EXTRACT,
            FailureKind.ARTIFACT_TRANSFER,
        )

    def test_runtime_copy(self, stages: list[Stage]):
        """Should map a failed runtime copy to artifact copy."""
        log = _log(
            "#15 [runtime 4/6] COPY --from=builder "
            "/app/crates/collab/migrations /app/migrations",
            "#15 ERROR: not found",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.ARTIFACT_COPY,
            FailureKind.ARTIFACT_TRANSFER,
        )

    def test_base_image_unavailable(self, stages: list[Stage]):
        """Should map metadata failures to the stage pulling the image."""
        log = _log(
            "#3 [internal] load metadata for docker.io/library/debian:bookworm-slim",
            "#3 ERROR: docker.io/library/debian:bookworm-slim: not found",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.BASE_SELECT,
            FailureKind.BASE_IMAGE,
        )

    def test_builder_base_image(self, stages: list[Stage]):
        """Should attribute a missing toolchain image to the builder."""
        log = _log(
            "#2 [internal] load metadata for docker.io/library/rust:1.81-bookworm",
            "#2 ERROR: failed to resolve source metadata",
        )
        assert classify_build_failure(log, stages) == (
            PipelineState.SOURCE_OVERLAY,
            FailureKind.BASE_IMAGE,
        )

    def test_unknown(self, stages: list[Stage]):
        """Should fall back to an unknown failure."""
        assert classify_build_failure(_log("ERROR: daemon gone"), stages) == (
            None,
            FailureKind.UNKNOWN,
        )


class TestDockerHelpers:
    """Tests for the docker wrapper functions."""

    def test_inspect_image(self):
        """Should return the first inspect element."""
        data = [{"Id": "sha256:abc", "Config": {"Entrypoint": ["/app/collab"]}}]
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess(
                args=[], returncode=0, stdout=json.dumps(data), stderr=""
            )
            result = inspect_image("collab:latest")

        assert result["Id"] == "sha256:abc"
        assert mock_run.call_args.args[0] == [
            "docker",
            "image",
            "inspect",
            "collab:latest",
        ]

    def test_inspect_missing(self):
        """Should wrap docker failures."""
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.CalledProcessError(
                1, "docker", stderr="Error: No such image: collab:nope"
            )
            with pytest.raises(DockerCommandError) as exc_info:
                inspect_image("collab:nope")

        assert exc_info.value.code == "docker_image_error"
        assert "No such image" in str(exc_info.value)

    def test_export_removes_container(self, tmp_path: Path):
        """Should remove the container even if export fails."""
        created = subprocess.CompletedProcess(
            args=[], returncode=0, stdout="c0ffee\n", stderr=""
        )
        removed = subprocess.CompletedProcess(args=[], returncode=0, stdout="")
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = [
                created,
                subprocess.CalledProcessError(1, "docker", stderr="disk full"),
                removed,
            ]
            with pytest.raises(DockerCommandError):
                export_image_filesystem("collab:c", tmp_path / "rootfs.tar")

        assert mock_run.call_args_list[-1].args[0] == [
            "docker",
            "rm",
            "--force",
            "c0ffee",
        ]

    def test_tag_and_remove(self):
        """Should issue tag and image rm commands."""
        ok = subprocess.CompletedProcess(args=[], returncode=0, stdout="")
        with patch("collab_imagegen.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = ok
            tag_image("collab:candidate-1", "collab:latest")
            remove_image("collab:candidate-1")

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands == [
            ["docker", "tag", "collab:candidate-1", "collab:latest"],
            ["docker", "image", "rm", "collab:candidate-1"],
        ]
