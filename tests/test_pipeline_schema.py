"""Tests for pipeline definition schema."""

import pytest
from pydantic import ValidationError

from collab_imagegen.pipeline.schema import (
    AssetDirSchema,
    BuilderStageSchema,
    BuildParameters,
    CacheMountSchema,
    ConfigOverrideSchema,
    PipelineSchema,
    RuntimeStageSchema,
    default_pipeline,
    validate_build_identifier,
    validate_image_repository,
)
from collab_imagegen.types import CacheKind, PanicPolicy


class TestDefaultPipeline:
    """Test the built-in collab pipeline."""

    def test_builder_defaults(self) -> None:
        """Builder compiles the collab binary in release mode."""
        builder = default_pipeline().builder
        assert builder.package == "collab"
        assert builder.binary == "collab"
        assert builder.profile == "release"
        assert builder.system_packages == ["cmake"]
        assert builder.artifact_path == "/app/collab"
        assert builder.config_override.source == "./.cargo/collab-config.toml"
        assert builder.config_override.destination == "./.cargo/config.toml"

    def test_four_caches(self) -> None:
        """Compile step has four independently keyed caches."""
        caches = default_pipeline().builder.caches
        assert [c.kind for c in caches] == [
            CacheKind.PACKAGE_MANAGER,
            CacheKind.REGISTRY,
            CacheKind.GIT,
            CacheKind.BUILD_OUTPUT,
        ]
        assert len({c.id for c in caches}) == 4

    def test_runtime_defaults(self) -> None:
        """Runtime is a slim Debian with the runtime packages."""
        runtime = default_pipeline().runtime
        assert runtime.base_image == "debian:bookworm-slim"
        assert runtime.system_packages == [
            "libcurl4-openssl-dev",
            "ca-certificates",
            "linux-perf",
            "binutils",
        ]
        assert runtime.binary_path == "/app/collab"
        assert {a.env_var: a.destination for a in runtime.assets} == {
            "MIGRATIONS_PATH": "/app/migrations",
            "LLM_DATABASE_MIGRATIONS_PATH": "/app/migrations_llm",
        }

    def test_parameters(self) -> None:
        """Panic defaults to abort and the identifier arg is GITHUB_SHA."""
        params = default_pipeline().parameters
        assert params.default_panic_policy is PanicPolicy.ABORT
        assert params.build_identifier_arg == "GITHUB_SHA"

    def test_builder_derived_properties(self) -> None:
        """Panic arg and output dir follow the profile."""
        builder = default_pipeline().builder
        assert builder.panic_arg == "CARGO_PROFILE_RELEASE_PANIC"
        assert builder.profile_dir == "release"
        assert builder.build_output_cache.id == "collab-target"

    def test_dev_profile_dir(self) -> None:
        """Cargo writes the dev profile to target/debug."""
        builder = BuilderStageSchema(profile="dev")
        assert builder.profile_dir == "debug"
        assert builder.panic_arg == "CARGO_PROFILE_DEV_PANIC"


class TestCacheMountSchema:
    """Test cache mount validation."""

    def test_invalid_sharing(self) -> None:
        """Only BuildKit sharing modes are accepted."""
        with pytest.raises(ValidationError, match="sharing"):
            CacheMountSchema(id="c", target="/c", kind="git", sharing="exclusive")

    def test_parent_dir_target(self) -> None:
        """Mount targets cannot climb out of the workdir."""
        with pytest.raises(ValidationError):
            CacheMountSchema(id="c", target="../c", kind="git")

    def test_invalid_id(self) -> None:
        """Cache ids are restricted to a safe alphabet."""
        with pytest.raises(ValidationError):
            CacheMountSchema(id="bad id", target="/c", kind="git")


class TestBuilderStageSchema:
    """Test builder stage validation."""

    def test_duplicate_cache_ids(self) -> None:
        """Cache ids must be unique."""
        caches = [
            {"id": "same", "target": "/a", "kind": "registry"},
            {"id": "same", "target": "/b", "kind": "build-output"},
        ]
        with pytest.raises(ValidationError, match="unique"):
            BuilderStageSchema(caches=caches)

    def test_requires_one_build_output_cache(self) -> None:
        """Exactly one cache holds the compiled output."""
        caches = [{"id": "registry", "target": "/a", "kind": "registry"}]
        with pytest.raises(ValidationError, match="build-output"):
            BuilderStageSchema(caches=caches)

    def test_requires_system_package(self) -> None:
        """The builder needs at least one native dependency."""
        with pytest.raises(ValidationError):
            BuilderStageSchema(system_packages=[])

    def test_relative_workdir_rejected(self) -> None:
        """Workdir must be absolute."""
        with pytest.raises(ValidationError, match="absolute"):
            BuilderStageSchema(workdir="app")

    def test_unknown_field_rejected(self) -> None:
        """Unknown fields are errors, not silently ignored."""
        with pytest.raises(ValidationError):
            BuilderStageSchema(toolchain="nightly")


class TestConfigOverrideSchema:
    """Test config override validation."""

    def test_absolute_source_rejected(self) -> None:
        """The override must come from the source tree."""
        with pytest.raises(ValidationError, match="relative"):
            ConfigOverrideSchema(source="/etc/cargo.toml", destination=".cargo/x")

    def test_parent_dir_rejected(self) -> None:
        """The override must not escape the source tree."""
        with pytest.raises(ValidationError):
            ConfigOverrideSchema(source="../secrets.toml", destination=".cargo/x")


class TestRuntimeStageSchema:
    """Test runtime stage validation."""

    def test_duplicate_env_var(self) -> None:
        """Two asset dirs cannot share a variable."""
        assets = [
            AssetDirSchema(source="a", destination="/a", env_var="DIR"),
            AssetDirSchema(source="b", destination="/b", env_var="DIR"),
        ]
        with pytest.raises(ValidationError, match="env_var"):
            RuntimeStageSchema(assets=assets)

    def test_duplicate_destination(self) -> None:
        """Two asset dirs cannot land in the same place."""
        assets = [
            AssetDirSchema(source="a", destination="/data", env_var="A_DIR"),
            AssetDirSchema(source="b", destination="/data", env_var="B_DIR"),
        ]
        with pytest.raises(ValidationError, match="destinations"):
            RuntimeStageSchema(assets=assets)

    def test_binary_collides_with_asset(self) -> None:
        """The binary path cannot be an asset destination."""
        assets = [AssetDirSchema(source="a", destination="/app/collab", env_var="A")]
        with pytest.raises(ValidationError, match="binary_path"):
            RuntimeStageSchema(assets=assets)

    def test_asset_destination_must_be_absolute(self) -> None:
        """Env vars must hold absolute paths, so destinations must be absolute."""
        with pytest.raises(ValidationError, match="absolute"):
            AssetDirSchema(source="a", destination="migrations", env_var="A")

    def test_env_var_pattern(self) -> None:
        """Env var names are upper-case identifiers."""
        with pytest.raises(ValidationError):
            AssetDirSchema(source="a", destination="/a", env_var="migrations-path")


class TestPipelineSchema:
    """Test pipeline-level validation."""

    def test_stage_names_differ(self) -> None:
        """Builder and runtime stages need distinct names."""
        with pytest.raises(ValidationError, match="different names"):
            PipelineSchema(
                name="collab",
                image_repository="collab",
                builder=BuilderStageSchema(name="stage"),
                runtime=RuntimeStageSchema(name="stage"),
            )

    def test_requires_repository(self) -> None:
        """A pipeline must name the repository it publishes to."""
        with pytest.raises(ValidationError):
            PipelineSchema(name="collab")

    @pytest.mark.parametrize(
        "repository",
        ["collab", "zed/collab", "ghcr.io/zed/collab", "localhost:5000/collab"],
    )
    def test_registry_repositories_accepted(self, repository: str) -> None:
        """Plain names and registry-qualified names are valid."""
        pipeline = PipelineSchema(name="collab", image_repository=repository)
        assert pipeline.image_repository == repository

    @pytest.mark.parametrize(
        "repository",
        ["Collab", "bad repo", "collab/", "-collab", "collab@sha256", "a" * 256],
    )
    def test_invalid_repository_rejected(self, repository: str) -> None:
        """Repositories outside the docker reference grammar are rejected."""
        with pytest.raises(ValidationError):
            PipelineSchema(name="collab", image_repository=repository)

    def test_validate_image_repository_message(self) -> None:
        """The error names the offending value."""
        with pytest.raises(ValueError, match="'Bad Repo'"):
            validate_image_repository("Bad Repo")


class TestBuildParameters:
    """Test invocation parameters."""

    def test_defaults(self) -> None:
        """No policy and an empty identifier by default."""
        params = BuildParameters()
        assert params.panic_policy is None
        assert params.build_identifier == ""

    def test_effective_policy_defaults_to_pipeline(self) -> None:
        """An omitted policy falls back to the pipeline default."""
        assert BuildParameters().effective_panic_policy(default_pipeline()) is (
            PanicPolicy.ABORT
        )

    def test_effective_policy_override(self) -> None:
        """An explicit policy wins."""
        params = BuildParameters(panic_policy="unwind")
        assert params.effective_panic_policy(default_pipeline()) is PanicPolicy.UNWIND

    def test_commit_sha_accepted(self) -> None:
        """A full commit SHA is a valid identifier."""
        sha = "3f1c2a9be0d4c8f71a2b3c4d5e6f708192a3b4c5"
        assert BuildParameters(build_identifier=sha).build_identifier == sha

    @pytest.mark.parametrize(
        "value",
        ["has space", "quote\"d", "semi;colon", "$(whoami)", "x" * 129],
    )
    def test_unsafe_identifier_rejected(self, value: str) -> None:
        """Identifiers that cannot be passed safely are rejected."""
        with pytest.raises(ValidationError):
            BuildParameters(build_identifier=value)

    def test_validate_build_identifier_allows_branch_names(self) -> None:
        """Branch-like identifiers are allowed."""
        assert validate_build_identifier("release/v0.150+hotfix") == (
            "release/v0.150+hotfix"
        )
