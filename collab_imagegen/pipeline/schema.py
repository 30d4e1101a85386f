"""Pydantic models for pipeline definitions.

This module defines the declarative description of the two-stage image
build: the builder stage that compiles the server binary, the runtime stage
that ships it, and the build parameters supplied on each invocation.
Definitions are validated here before any instruction is composed.
"""

import re
from pathlib import PurePosixPath
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from collab_imagegen.types import CacheKind, PanicPolicy

ENV_VAR_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
STAGE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
# Build identifiers end up in a build argument and in the image environment
BUILD_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9._+/-]*$")
BUILD_IDENTIFIER_MAX_LENGTH = 128
# Docker reference grammar: optional registry host[:port], then lowercase
# path components
_REGISTRY_HOST = (
    r"(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*(?::[0-9]+)?/)?"
)
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
IMAGE_REPOSITORY_PATTERN = re.compile(
    rf"^{_REGISTRY_HOST}{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$"
)
IMAGE_REPOSITORY_MAX_LENGTH = 255


def _check_relative(value: str, field_name: str) -> str:
    path = PurePosixPath(value)
    if path.is_absolute():
        raise ValueError(f"{field_name} must be relative to the source tree")
    if ".." in path.parts:
        raise ValueError(f"{field_name} must not contain '..'")
    return value


def _check_absolute(value: str, field_name: str) -> str:
    path = PurePosixPath(value)
    if not path.is_absolute():
        raise ValueError(f"{field_name} must be an absolute path")
    if ".." in path.parts:
        raise ValueError(f"{field_name} must not contain '..'")
    return value


def validate_build_identifier(value: str) -> str:
    """Validate an opaque build identifier.

    Args:
        value: Identifier, typically a source-control revision.

    Returns:
        The identifier unchanged.

    Raises:
        ValueError: If the identifier is too long or holds unsafe characters.
    """
    if len(value) > BUILD_IDENTIFIER_MAX_LENGTH:
        raise ValueError(
            f"build identifier longer than {BUILD_IDENTIFIER_MAX_LENGTH} characters"
        )
    if not BUILD_IDENTIFIER_PATTERN.match(value):
        raise ValueError(
            "build identifier may only contain letters, digits and '._+/-', "
            f"got {value!r}"
        )
    return value


def validate_image_repository(value: str) -> str:
    """Validate an image repository name, e.g. ``registry:5000/team/collab``.

    Raises:
        ValueError: If the name is not a valid docker repository reference.
    """
    if len(value) > IMAGE_REPOSITORY_MAX_LENGTH:
        raise ValueError(
            f"image repository longer than {IMAGE_REPOSITORY_MAX_LENGTH} characters"
        )
    if not IMAGE_REPOSITORY_PATTERN.match(value):
        raise ValueError(
            "image repository must be lowercase path components with an "
            f"optional registry host, got {value!r}"
        )
    return value


class CacheMountSchema(BaseModel):
    """Schema for a keyed, persistent cache mount of the compile step.

    Attributes:
        id: Cache key; each mount is keyed independently.
        target: Mount point, absolute or relative to the builder workdir.
        kind: What the cache holds.
        sharing: BuildKit sharing mode; 'shared' is last-writer-wins.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[
        str, Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._-]+$")
    ]
    target: Annotated[str, Field(min_length=1)]
    kind: CacheKind
    sharing: str = Field(default="shared", description="shared, private or locked")

    @field_validator("sharing")
    @classmethod
    def validate_sharing(cls, v: str) -> str:
        """Validate sharing is a BuildKit sharing mode."""
        supported = {"shared", "private", "locked"}
        if v not in supported:
            raise ValueError(f"sharing must be one of {sorted(supported)}, got '{v}'")
        return v

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        """Reject parent-directory components in mount targets."""
        if ".." in PurePosixPath(v).parts:
            raise ValueError("target must not contain '..'")
        return v


class ConfigOverrideSchema(BaseModel):
    """Schema for the build-tool configuration override.

    The source file is copied over the destination after the source tree
    copy and before compilation.
    """

    model_config = ConfigDict(extra="forbid")

    source: str = Field(description="Override file, relative to the source tree")
    destination: str = Field(description="File it replaces, relative to the workdir")

    @field_validator("source", "destination")
    @classmethod
    def validate_relative(cls, v: str, info: ValidationInfo) -> str:
        """Validate paths stay inside the source tree."""
        return _check_relative(v, info.field_name)


def _default_caches() -> list[CacheMountSchema]:
    return [
        CacheMountSchema(
            id="collab-script-node-modules",
            target="./script/node_modules",
            kind=CacheKind.PACKAGE_MANAGER,
        ),
        CacheMountSchema(
            id="collab-cargo-registry",
            target="/usr/local/cargo/registry",
            kind=CacheKind.REGISTRY,
        ),
        CacheMountSchema(
            id="collab-cargo-git",
            target="/usr/local/cargo/git",
            kind=CacheKind.GIT,
        ),
        CacheMountSchema(
            id="collab-target",
            target="./target",
            kind=CacheKind.BUILD_OUTPUT,
        ),
    ]


class BuilderStageSchema(BaseModel):
    """Schema for the stage that compiles the server binary.

    Attributes:
        name: Stage name, referenced by runtime copies.
        base_image: Toolchain image.
        workdir: Directory the source tree is copied into.
        config_override: Build-tool configuration override.
        system_packages: Native packages needed only to compile.
        package: Cargo package holding the binary target.
        binary: Binary target name.
        profile: Cargo profile to compile with.
        caches: Cache mounts for the compile step.
        artifact_path: Stable, cache-independent path for the binary.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(pattern=STAGE_NAME_PATTERN.pattern)] = "builder"
    base_image: Annotated[str, Field(min_length=1)] = "rust:1.81-bookworm"
    workdir: str = "/app"
    config_override: ConfigOverrideSchema = Field(
        default_factory=lambda: ConfigOverrideSchema(
            source="./.cargo/collab-config.toml",
            destination="./.cargo/config.toml",
        )
    )
    # cmake is required to build wasmtime, not to run the server
    system_packages: list[str] = Field(
        default_factory=lambda: ["cmake"], min_length=1
    )
    package: Annotated[str, Field(min_length=1)] = "collab"
    binary: Annotated[str, Field(min_length=1)] = "collab"
    profile: Annotated[str, Field(pattern=r"^[a-z][a-z0-9_-]*$")] = "release"
    caches: list[CacheMountSchema] = Field(default_factory=_default_caches)
    artifact_path: str = "/app/collab"

    @field_validator("workdir", "artifact_path")
    @classmethod
    def validate_absolute(cls, v: str, info: ValidationInfo) -> str:
        """Validate stage paths are absolute."""
        return _check_absolute(v, info.field_name)

    @model_validator(mode="after")
    def validate_caches(self) -> "BuilderStageSchema":
        """Validate cache ids are unique and one cache holds build output."""
        ids = [c.id for c in self.caches]
        if len(ids) != len(set(ids)):
            raise ValueError("cache ids must be unique")
        outputs = [c for c in self.caches if c.kind == CacheKind.BUILD_OUTPUT]
        if len(outputs) != 1:
            raise ValueError("exactly one cache must have kind 'build-output'")
        return self

    @property
    def build_output_cache(self) -> CacheMountSchema:
        """The cache mount holding compiled output."""
        return next(c for c in self.caches if c.kind == CacheKind.BUILD_OUTPUT)

    @property
    def profile_dir(self) -> str:
        """Directory under the target dir that cargo writes this profile to."""
        if self.profile == "dev":
            return "debug"
        return self.profile

    @property
    def panic_arg(self) -> str:
        """Build argument cargo reads as the panic strategy of this profile."""
        return f"CARGO_PROFILE_{self.profile.upper().replace('-', '_')}_PANIC"


class AssetDirSchema(BaseModel):
    """Schema for a read-only asset directory shipped in the runtime image.

    Attributes:
        source: Directory in the source tree.
        destination: Absolute path in the runtime image.
        env_var: Variable the binary reads to find the directory.
    """

    model_config = ConfigDict(extra="forbid")

    source: str
    destination: str
    env_var: Annotated[str, Field(pattern=ENV_VAR_PATTERN.pattern)]

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        """Validate source is inside the source tree."""
        return _check_relative(v, "source")

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        """Validate destination is absolute."""
        return _check_absolute(v, "destination")


def _default_assets() -> list[AssetDirSchema]:
    return [
        AssetDirSchema(
            source="crates/collab/migrations",
            destination="/app/migrations",
            env_var="MIGRATIONS_PATH",
        ),
        AssetDirSchema(
            source="crates/collab/migrations_llm",
            destination="/app/migrations_llm",
            env_var="LLM_DATABASE_MIGRATIONS_PATH",
        ),
    ]


class RuntimeStageSchema(BaseModel):
    """Schema for the minimal image that runs the binary."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(pattern=STAGE_NAME_PATTERN.pattern)] = "runtime"
    base_image: Annotated[str, Field(min_length=1)] = "debian:bookworm-slim"
    workdir: str = "/app"
    # TLS/HTTP client, trust store, and perf/binutils for live diagnostics
    system_packages: list[str] = Field(
        default_factory=lambda: [
            "libcurl4-openssl-dev",
            "ca-certificates",
            "linux-perf",
            "binutils",
        ]
    )
    binary_path: str = "/app/collab"
    assets: list[AssetDirSchema] = Field(
        default_factory=_default_assets, min_length=1
    )
    expose_build_identifier: bool = True

    @field_validator("workdir", "binary_path")
    @classmethod
    def validate_absolute(cls, v: str, info: ValidationInfo) -> str:
        """Validate stage paths are absolute."""
        return _check_absolute(v, info.field_name)

    @model_validator(mode="after")
    def validate_assets(self) -> "RuntimeStageSchema":
        """Validate asset env vars and destinations are distinct."""
        env_vars = [a.env_var for a in self.assets]
        if len(env_vars) != len(set(env_vars)):
            raise ValueError("asset env_var values must be unique")
        destinations = [a.destination for a in self.assets]
        if len(destinations) != len(set(destinations)):
            raise ValueError("asset destinations must be unique")
        if self.binary_path in destinations:
            raise ValueError("binary_path must not collide with an asset destination")
        return self


class ParametersSchema(BaseModel):
    """Schema for build arguments supplied on each invocation."""

    model_config = ConfigDict(extra="forbid")

    build_identifier_arg: Annotated[str, Field(pattern=ENV_VAR_PATTERN.pattern)] = (
        "GITHUB_SHA"
    )
    default_panic_policy: PanicPolicy = PanicPolicy.ABORT


class PipelineSchema(BaseModel):
    """Complete two-stage pipeline definition.

    Attributes:
        name: Pipeline name, used for build records and image tags.
        syntax: Dockerfile frontend used to parse the rendered file.
        image_repository: Repository the runtime image is tagged into.
        builder: Builder stage definition.
        runtime: Runtime stage definition.
        parameters: Build argument names and defaults.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[
        str, Field(min_length=1, max_length=100, pattern=r"^[a-z0-9._-]+$")
    ]
    syntax: str = "docker/dockerfile:1.2"
    image_repository: Annotated[str, Field(min_length=1)]
    builder: BuilderStageSchema = Field(default_factory=BuilderStageSchema)
    runtime: RuntimeStageSchema = Field(default_factory=RuntimeStageSchema)
    parameters: ParametersSchema = Field(default_factory=ParametersSchema)

    @field_validator("image_repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate the repository follows the docker reference grammar."""
        return validate_image_repository(v)

    @model_validator(mode="after")
    def validate_stage_names(self) -> "PipelineSchema":
        """Validate the two stages can be told apart."""
        if self.builder.name == self.runtime.name:
            raise ValueError("builder and runtime stages must have different names")
        return self


class BuildParameters(BaseModel):
    """Parameters of a single pipeline invocation.

    Attributes:
        panic_policy: Panic strategy override; None keeps the pipeline default.
        build_identifier: Opaque revision string exported to the environment.
    """

    model_config = ConfigDict(extra="forbid")

    panic_policy: PanicPolicy | None = None
    build_identifier: str = ""

    @field_validator("build_identifier")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Validate the identifier is safe as an environment value."""
        return validate_build_identifier(v)

    def effective_panic_policy(self, pipeline: PipelineSchema) -> PanicPolicy:
        """Return the policy the compiled binary will end up with."""
        return self.panic_policy or pipeline.parameters.default_panic_policy


def default_pipeline() -> PipelineSchema:
    """Return the built-in collab pipeline definition."""
    return PipelineSchema(name="collab", image_repository="collab")


__all__ = [
    "BUILD_IDENTIFIER_MAX_LENGTH",
    "AssetDirSchema",
    "BuildParameters",
    "BuilderStageSchema",
    "CacheMountSchema",
    "ConfigOverrideSchema",
    "ParametersSchema",
    "PipelineSchema",
    "RuntimeStageSchema",
    "default_pipeline",
    "validate_build_identifier",
]
