"""Stage composition and pipeline invariants.

This module handles:
- Composing a pipeline definition into ordered stage instructions
- Tagging each instruction with its pipeline state
- Validating the ordering, cache-scope and artifact-transfer invariants

Instructions are plain frozen dataclasses; rendering them as a Dockerfile
lives in collab_imagegen.builds.dockerfile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import ClassVar

from collab_imagegen.pipeline.schema import BuilderStageSchema, PipelineSchema
from collab_imagegen.types import PIPELINE_ORDER, PipelineState

logger = logging.getLogger(__name__)

APT_UPDATE = "apt-get update"
APT_INSTALL = "apt-get install -y --no-install-recommends"
APT_CLEANUP = "rm -rf /var/lib/apt/lists/*"


class PipelineDefinitionError(Exception):
    """Raised when composed stages break a pipeline invariant."""

    def __init__(self, message: str, code: str = "pipeline_definition_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class CacheMount:
    """A cache scope mounted for the duration of one RUN step."""

    id: str
    target: str
    sharing: str = "shared"


@dataclass(frozen=True)
class Instruction:
    """Base class for stage instructions."""

    state: PipelineState
    keyword: ClassVar[str] = ""


@dataclass(frozen=True)
class FromImage(Instruction):
    image: str
    alias: str
    keyword: ClassVar[str] = "FROM"


@dataclass(frozen=True)
class Workdir(Instruction):
    path: str
    keyword: ClassVar[str] = "WORKDIR"


@dataclass(frozen=True)
class Copy(Instruction):
    source: str
    destination: str
    from_stage: str | None = None
    keyword: ClassVar[str] = "COPY"


@dataclass(frozen=True)
class Arg(Instruction):
    name: str
    default: str | None = None
    keyword: ClassVar[str] = "ARG"


@dataclass(frozen=True)
class Env(Instruction):
    name: str
    value: str
    keyword: ClassVar[str] = "ENV"


@dataclass(frozen=True)
class Run(Instruction):
    commands: tuple[str, ...]
    mounts: tuple[CacheMount, ...] = ()
    keyword: ClassVar[str] = "RUN"


@dataclass(frozen=True)
class Entrypoint(Instruction):
    argv: tuple[str, ...]
    keyword: ClassVar[str] = "ENTRYPOINT"


@dataclass
class Stage:
    """A named build stage and its instructions, in execution order."""

    name: str
    instructions: list[Instruction] = field(default_factory=list)

    def in_state(self, state: PipelineState) -> list[Instruction]:
        """Return the instructions belonging to a pipeline state."""
        return [i for i in self.instructions if i.state == state]


def resolve_in_workdir(path: str, workdir: str) -> PurePosixPath:
    """Resolve a stage path against the stage workdir.

    Args:
        path: Absolute path, or path relative to workdir.
        workdir: Absolute stage workdir.

    Returns:
        Absolute, normalized path.
    """
    candidate = PurePosixPath(path)
    if not candidate.is_absolute():
        candidate = PurePosixPath(workdir) / candidate
    parts: list[str] = []
    for part in candidate.parts[1:]:
        if part == ".":
            continue
        parts.append(part)
    return PurePosixPath("/", *parts)


def is_within(path: PurePosixPath, parent: PurePosixPath) -> bool:
    """Check whether path equals parent or lies beneath it."""
    return path == parent or parent in path.parents


def apt_install_commands(packages: list[str], cleanup: bool = False) -> tuple[str, ...]:
    """Compose apt commands installing exactly the given packages.

    Args:
        packages: Debian package names.
        cleanup: Remove apt lists afterwards.

    Returns:
        Commands to chain in a single RUN step.
    """
    commands = [APT_UPDATE, f"{APT_INSTALL} {' '.join(packages)}"]
    if cleanup:
        commands.append(APT_CLEANUP)
    return tuple(commands)


def cargo_build_command(builder: BuilderStageSchema) -> str:
    """Compose the cargo command compiling exactly one binary target."""
    if builder.profile == "release":
        profile_flag = "--release"
    else:
        profile_flag = f"--profile {builder.profile}"
    return (
        f"cargo build {profile_flag} "
        f"--package {builder.package} --bin {builder.binary}"
    )


def compiled_binary_path(builder: BuilderStageSchema) -> PurePosixPath:
    """Path of the compiled binary inside the build-output cache."""
    output_dir = resolve_in_workdir(builder.build_output_cache.target, builder.workdir)
    return output_dir / builder.profile_dir / builder.binary


def _cache_mounts(builder: BuilderStageSchema) -> tuple[CacheMount, ...]:
    return tuple(
        CacheMount(id=c.id, target=c.target, sharing=c.sharing) for c in builder.caches
    )


def compose_builder_stage(pipeline: PipelineSchema) -> Stage:
    """Compose the builder stage.

    Order: source copy, configuration override, native dependency install,
    build parameters, compile under all caches, then copy the binary out of
    the build-output cache in a step that re-mounts only that cache.

    Args:
        pipeline: Pipeline definition.

    Returns:
        Builder Stage.
    """
    builder = pipeline.builder
    build_id_arg = pipeline.parameters.build_identifier_arg
    output_cache = builder.build_output_cache

    instructions: list[Instruction] = [
        FromImage(PipelineState.SOURCE_OVERLAY, builder.base_image, builder.name),
        Workdir(PipelineState.SOURCE_OVERLAY, builder.workdir),
        Copy(PipelineState.SOURCE_OVERLAY, ".", "."),
        Copy(
            PipelineState.SOURCE_OVERLAY,
            builder.config_override.source,
            builder.config_override.destination,
        ),
        Run(
            PipelineState.BUILDER_DEPENDENCY_INSTALL,
            apt_install_commands(builder.system_packages),
        ),
        Arg(
            PipelineState.COMPILE,
            builder.panic_arg,
            pipeline.parameters.default_panic_policy.value,
        ),
        Arg(PipelineState.COMPILE, build_id_arg),
        Env(PipelineState.COMPILE, build_id_arg, f"${{{build_id_arg}}}"),
        Run(
            PipelineState.COMPILE,
            (cargo_build_command(builder),),
            mounts=_cache_mounts(builder),
        ),
        Run(
            PipelineState.ARTIFACT_EXTRACT,
            (f"cp {compiled_binary_path(builder)} {builder.artifact_path}",),
            mounts=(
                CacheMount(
                    id=output_cache.id,
                    target=output_cache.target,
                    sharing=output_cache.sharing,
                ),
            ),
        ),
    ]
    return Stage(name=builder.name, instructions=instructions)


def compose_runtime_stage(pipeline: PipelineSchema) -> Stage:
    """Compose the runtime stage.

    Args:
        pipeline: Pipeline definition.

    Returns:
        Runtime Stage.
    """
    builder = pipeline.builder
    runtime = pipeline.runtime
    build_id_arg = pipeline.parameters.build_identifier_arg

    instructions: list[Instruction] = [
        FromImage(PipelineState.BASE_SELECT, runtime.base_image, runtime.name),
    ]
    if runtime.system_packages:
        instructions.append(
            Run(
                PipelineState.RUNTIME_DEPENDENCY_INSTALL,
                apt_install_commands(runtime.system_packages, cleanup=True),
            )
        )

    instructions.append(Workdir(PipelineState.ARTIFACT_COPY, runtime.workdir))
    instructions.append(
        Copy(
            PipelineState.ARTIFACT_COPY,
            builder.artifact_path,
            runtime.binary_path,
            from_stage=builder.name,
        )
    )
    for asset in runtime.assets:
        source = resolve_in_workdir(asset.source, builder.workdir)
        instructions.append(
            Copy(
                PipelineState.ARTIFACT_COPY,
                str(source),
                asset.destination,
                from_stage=builder.name,
            )
        )

    if runtime.expose_build_identifier:
        instructions.append(Arg(PipelineState.ENV_CONFIGURE, build_id_arg))
        instructions.append(
            Env(PipelineState.ENV_CONFIGURE, build_id_arg, f"${{{build_id_arg}}}")
        )
    for asset in runtime.assets:
        instructions.append(
            Env(PipelineState.ENV_CONFIGURE, asset.env_var, asset.destination)
        )

    instructions.append(
        Entrypoint(PipelineState.ENTRYPOINT_DECLARE, (runtime.binary_path,))
    )
    return Stage(name=runtime.name, instructions=instructions)


def _check_state_order(stages: list[Stage]) -> None:
    previous = PipelineState.START
    for stage in stages:
        for instruction in stage.instructions:
            if PIPELINE_ORDER[instruction.state] < PIPELINE_ORDER[previous]:
                raise PipelineDefinitionError(
                    f"{instruction.keyword} in stage '{stage.name}' belongs to "
                    f"{instruction.state.value} but follows {previous.value}",
                    code="state_regression",
                )
            previous = instruction.state


def _check_override_order(pipeline: PipelineSchema, builder_stage: Stage) -> None:
    override = pipeline.builder.config_override
    source_index = override_index = compile_index = None
    for index, instruction in enumerate(builder_stage.instructions):
        if isinstance(instruction, Copy) and instruction.from_stage is None:
            if instruction.source == "." and source_index is None:
                source_index = index
            elif (
                instruction.source == override.source
                and instruction.destination == override.destination
            ):
                override_index = index
        elif (
            isinstance(instruction, Run)
            and instruction.state == PipelineState.COMPILE
            and compile_index is None
        ):
            compile_index = index

    if source_index is None or override_index is None or compile_index is None:
        raise PipelineDefinitionError(
            "builder stage needs a source copy, an override copy and a compile step",
            code="override_order",
        )
    if not source_index < override_index < compile_index:
        raise PipelineDefinitionError(
            "configuration override must be applied after the source copy "
            "and before the compile step",
            code="override_order",
        )


def _check_cache_scopes(pipeline: PipelineSchema, builder_stage: Stage) -> None:
    builder = pipeline.builder
    declared = {c.id for c in builder.caches}
    cache_targets = [
        resolve_in_workdir(c.target, builder.workdir) for c in builder.caches
    ]

    compile_runs = [
        i for i in builder_stage.in_state(PipelineState.COMPILE) if isinstance(i, Run)
    ]
    if len(compile_runs) != 1:
        raise PipelineDefinitionError(
            "builder stage must have exactly one compile step", code="cache_mounts"
        )
    mounts = compile_runs[0].mounts
    mount_ids = [m.id for m in mounts]
    mount_targets = [resolve_in_workdir(m.target, builder.workdir) for m in mounts]
    if set(mount_ids) != declared or len(mount_ids) != len(declared):
        raise PipelineDefinitionError(
            f"compile step must mount each declared cache once, got {mount_ids}",
            code="cache_mounts",
        )
    if len(set(mount_targets)) != len(mount_targets):
        raise PipelineDefinitionError(
            "compile step cache mounts must have distinct targets",
            code="cache_mounts",
        )

    extract_runs = [
        i
        for i in builder_stage.in_state(PipelineState.ARTIFACT_EXTRACT)
        if isinstance(i, Run)
    ]
    if len(extract_runs) != 1:
        raise PipelineDefinitionError(
            "builder stage must have exactly one artifact extract step",
            code="artifact_in_cache",
        )
    output_cache = builder.build_output_cache
    if not any(
        m.id == output_cache.id and m.target == output_cache.target
        for m in extract_runs[0].mounts
    ):
        raise PipelineDefinitionError(
            "artifact extract step must re-mount the build-output cache",
            code="artifact_in_cache",
        )

    artifact = PurePosixPath(builder.artifact_path)
    for target in cache_targets:
        if is_within(artifact, target):
            raise PipelineDefinitionError(
                f"artifact path {artifact} lies inside cache scope {target}",
                code="artifact_in_cache",
            )


def _check_runtime_stage(
    pipeline: PipelineSchema, builder_stage: Stage, runtime_stage: Stage
) -> None:
    builder = pipeline.builder
    runtime = pipeline.runtime
    cache_targets = [
        resolve_in_workdir(c.target, builder.workdir) for c in builder.caches
    ]

    for instruction in runtime_stage.instructions:
        if isinstance(instruction, Run) and instruction.mounts:
            raise PipelineDefinitionError(
                "runtime stage must not mount build caches", code="runtime_cache"
            )
        if isinstance(instruction, Copy):
            if instruction.from_stage != builder_stage.name:
                raise PipelineDefinitionError(
                    f"runtime copy of {instruction.source} must come from "
                    f"stage '{builder_stage.name}'",
                    code="copy_from_cache",
                )
            source = resolve_in_workdir(instruction.source, builder.workdir)
            for target in cache_targets:
                if is_within(source, target):
                    raise PipelineDefinitionError(
                        f"runtime copy reads {source} from cache scope {target}; "
                        "the scope is released before the runtime stage",
                        code="copy_from_cache",
                    )

    leaked = set(builder.system_packages) & set(runtime.system_packages)
    if leaked:
        raise PipelineDefinitionError(
            f"build-only packages installed in runtime stage: {sorted(leaked)}",
            code="toolchain_leak",
        )

    envs = {i.name: i.value for i in runtime_stage.instructions if isinstance(i, Env)}
    for asset in runtime.assets:
        value = envs.get(asset.env_var)
        if value is None or not PurePosixPath(value).is_absolute():
            raise PipelineDefinitionError(
                f"{asset.env_var} must be set to an absolute path",
                code="asset_env",
            )
        if value != asset.destination:
            raise PipelineDefinitionError(
                f"{asset.env_var}={value} does not point at {asset.destination}",
                code="asset_env",
            )

    entrypoints = [i for i in runtime_stage.instructions if isinstance(i, Entrypoint)]
    if len(entrypoints) != 1 or runtime_stage.instructions[-1] is not entrypoints[0]:
        raise PipelineDefinitionError(
            "runtime stage must end with exactly one entrypoint", code="entrypoint"
        )
    copied = {
        i.destination for i in runtime_stage.instructions if isinstance(i, Copy)
    }
    argv = entrypoints[0].argv
    if argv != (runtime.binary_path,) or runtime.binary_path not in copied:
        raise PipelineDefinitionError(
            f"entrypoint must be the copied binary {runtime.binary_path} "
            "with no default arguments",
            code="entrypoint",
        )


def validate_stages(pipeline: PipelineSchema, stages: list[Stage]) -> None:
    """Validate composed stages against the pipeline invariants.

    Args:
        pipeline: Pipeline definition the stages were composed from.
        stages: Builder and runtime stages, in that order.

    Raises:
        PipelineDefinitionError: If an invariant is broken.
    """
    if len(stages) != 2:
        raise PipelineDefinitionError(
            f"expected builder and runtime stages, got {len(stages)}",
            code="stage_count",
        )
    builder_stage, runtime_stage = stages
    _check_state_order(stages)
    _check_override_order(pipeline, builder_stage)
    _check_cache_scopes(pipeline, builder_stage)
    _check_runtime_stage(pipeline, builder_stage, runtime_stage)


def compose_stages(pipeline: PipelineSchema) -> list[Stage]:
    """Compose and validate the builder and runtime stages.

    Args:
        pipeline: Pipeline definition.

    Returns:
        [builder, runtime] stages.

    Raises:
        PipelineDefinitionError: If the definition breaks an invariant.
    """
    stages = [compose_builder_stage(pipeline), compose_runtime_stage(pipeline)]
    validate_stages(pipeline, stages)
    logger.debug(
        "Composed pipeline %s: %s",
        pipeline.name,
        ", ".join(f"{s.name}={len(s.instructions)}" for s in stages),
    )
    return stages


__all__ = [
    "Arg",
    "CacheMount",
    "Copy",
    "Entrypoint",
    "Env",
    "FromImage",
    "Instruction",
    "PipelineDefinitionError",
    "Run",
    "Stage",
    "Workdir",
    "apt_install_commands",
    "cargo_build_command",
    "compiled_binary_path",
    "compose_builder_stage",
    "compose_runtime_stage",
    "compose_stages",
    "is_within",
    "resolve_in_workdir",
    "validate_stages",
]
