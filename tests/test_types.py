"""Tests for shared types module."""

from collab_imagegen.types import (
    FAILURE_BY_STATE,
    PIPELINE_ORDER,
    ArtifactInfo,
    BuildStatus,
    CacheKind,
    FailureKind,
    OperationResult,
    PanicPolicy,
    PipelineState,
)


class TestEnums:
    """Test enum definitions."""

    def test_build_status_values(self) -> None:
        """BuildStatus should have expected values."""
        assert BuildStatus.PENDING.value == "pending"
        assert BuildStatus.RUNNING.value == "running"
        assert BuildStatus.SUCCEEDED.value == "succeeded"
        assert BuildStatus.FAILED.value == "failed"

    def test_panic_policy_values(self) -> None:
        """PanicPolicy values are what cargo accepts."""
        assert PanicPolicy("abort") is PanicPolicy.ABORT
        assert PanicPolicy("unwind") is PanicPolicy.UNWIND

    def test_cache_kinds(self) -> None:
        """There are four cache kinds."""
        assert {k.value for k in CacheKind} == {
            "package-manager",
            "registry",
            "git",
            "build-output",
        }


class TestPipelineState:
    """Test the pipeline state machine ordering."""

    def test_order_starts_and_ends(self) -> None:
        """START is first and DONE is last."""
        states = list(PipelineState)
        assert states[0] is PipelineState.START
        assert states[-1] is PipelineState.DONE

    def test_builder_states_precede_runtime_states(self) -> None:
        """Every builder state comes before every runtime state."""
        builder = [s for s in PipelineState if s.value.startswith("builder:")]
        runtime = [s for s in PipelineState if s.value.startswith("runtime:")]
        assert len(builder) == 4
        assert len(runtime) == 5
        assert max(PIPELINE_ORDER[s] for s in builder) < min(
            PIPELINE_ORDER[s] for s in runtime
        )

    def test_overlay_before_compile(self) -> None:
        """Source overlay precedes dependency install, which precedes compile."""
        assert (
            PIPELINE_ORDER[PipelineState.SOURCE_OVERLAY]
            < PIPELINE_ORDER[PipelineState.BUILDER_DEPENDENCY_INSTALL]
            < PIPELINE_ORDER[PipelineState.COMPILE]
            < PIPELINE_ORDER[PipelineState.ARTIFACT_EXTRACT]
        )


class TestFailureKinds:
    """Test failure classification per state."""

    def test_compile_failure(self) -> None:
        """A compile-state failure is a compile failure."""
        assert FAILURE_BY_STATE[PipelineState.COMPILE] is FailureKind.COMPILE

    def test_dependency_install_both_stages(self) -> None:
        """Both dependency-install states map to the same kind."""
        assert (
            FAILURE_BY_STATE[PipelineState.BUILDER_DEPENDENCY_INSTALL]
            is FAILURE_BY_STATE[PipelineState.RUNTIME_DEPENDENCY_INSTALL]
            is FailureKind.DEPENDENCY_INSTALL
        )

    def test_artifact_transfer(self) -> None:
        """Extracting and copying the artifact share a failure kind."""
        assert FAILURE_BY_STATE[PipelineState.ARTIFACT_EXTRACT] is (
            FailureKind.ARTIFACT_TRANSFER
        )
        assert FAILURE_BY_STATE[PipelineState.ARTIFACT_COPY] is (
            FailureKind.ARTIFACT_TRANSFER
        )


class TestDataclasses:
    """Test shared dataclasses."""

    def test_operation_result_defaults(self) -> None:
        """OperationResult defaults to no code and empty details."""
        result = OperationResult(success=True, message="ok")
        assert result.code is None
        assert result.log_path is None
        assert result.details == {}

    def test_artifact_info(self) -> None:
        """ArtifactInfo carries an optional env var."""
        info = ArtifactInfo(
            path="/app/collab",
            size_bytes=10,
            sha256="a" * 64,
            mode=0o755,
            kind="executable",
        )
        assert info.env_var is None
