"""Runtime image verification and manifest generation.

This module handles:
- Parsing `docker image inspect` output into an ImageConfig
- Reading the exported image filesystem into a file listing
- Verifying the image holds exactly the binary and asset directories,
  with the environment and entrypoint the pipeline declares
- Generating build manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import stat
import tarfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any

from collab_imagegen.builds.sources import SourceSnapshot, compute_file_hash
from collab_imagegen.pipeline.schema import PipelineSchema
from collab_imagegen.pipeline.steps import is_within, resolve_in_workdir
from collab_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

EXECUTABLE_KIND = "executable"
MIGRATION_KIND = "migration"

# Paths that only exist in the builder stage
TOOLCHAIN_PATHS = ["/usr/local/cargo", "/usr/local/rustup"]
# Where builder-only system packages install their main executable
PACKAGE_BIN_DIR = "/usr/bin"

HASH_CHUNK_SIZE = 64 * 1024


class ImageVerificationError(Exception):
    """Raised when a built image does not match the pipeline."""

    def __init__(self, message: str, code: str = "image_verification_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ImageConfig:
    """The parts of an image configuration the pipeline declares.

    Attributes:
        image_id: Content-addressed image id.
        env: Environment variables.
        entrypoint: Entrypoint argv.
        cmd: Default arguments (None when unset).
        workdir: Working directory.
    """

    image_id: str
    env: dict[str, str] = field(default_factory=dict)
    entrypoint: list[str] = field(default_factory=list)
    cmd: list[str] | None = None
    workdir: str = ""


@dataclass
class ImageFile:
    """A regular file in the exported image filesystem."""

    path: str
    size_bytes: int
    mode: int
    sha256: str

    @property
    def is_executable(self) -> bool:
        """Whether any execute bit is set."""
        return bool(self.mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def parse_image_config(inspect_data: dict[str, Any]) -> ImageConfig:
    """Parse `docker image inspect` data.

    Args:
        inspect_data: One element of the inspect JSON array.

    Returns:
        ImageConfig instance.
    """
    config = inspect_data.get("Config") or {}
    env: dict[str, str] = {}
    for item in config.get("Env") or []:
        name, _, value = item.partition("=")
        env[name] = value
    return ImageConfig(
        image_id=inspect_data.get("Id", ""),
        env=env,
        entrypoint=list(config.get("Entrypoint") or []),
        cmd=list(config["Cmd"]) if config.get("Cmd") else None,
        workdir=config.get("WorkingDir") or "",
    )


def _hash_stream(stream: Any) -> str:
    sha256 = hashlib.sha256()
    while chunk := stream.read(HASH_CHUNK_SIZE):
        sha256.update(chunk)
    return sha256.hexdigest()


def read_image_files(tar_path: Path) -> tuple[dict[str, ImageFile], set[str]]:
    """Read an exported image filesystem.

    Args:
        tar_path: Tar archive from `docker export`.

    Returns:
        Tuple of (regular files by absolute path, all entry paths).
    """
    files: dict[str, ImageFile] = {}
    entries: set[str] = set()
    with tarfile.open(tar_path, "r:*") as archive:
        for member in archive:
            path = str(PurePosixPath("/", member.name))
            entries.add(path)
            if not member.isfile():
                continue
            extracted = archive.extractfile(member)
            if extracted is None:
                continue
            with extracted:
                digest = _hash_stream(extracted)
            files[path] = ImageFile(
                path=path,
                size_bytes=member.size,
                mode=member.mode,
                sha256=digest,
            )
    logger.debug("Read %d files from %s", len(files), tar_path)
    return files, entries


def _forbidden_paths(pipeline: PipelineSchema) -> list[PurePosixPath]:
    builder = pipeline.builder
    forbidden = [PurePosixPath(p) for p in TOOLCHAIN_PATHS]
    runtime_packages = set(pipeline.runtime.system_packages)
    forbidden.extend(
        PurePosixPath(PACKAGE_BIN_DIR) / package
        for package in builder.system_packages
        if package not in runtime_packages
    )
    forbidden.extend(
        resolve_in_workdir(c.target, builder.workdir) for c in builder.caches
    )
    # Source tree markers from the builder workdir
    forbidden.append(resolve_in_workdir("Cargo.toml", builder.workdir))
    forbidden.append(resolve_in_workdir("crates", builder.workdir))
    forbidden.append(resolve_in_workdir(".cargo", builder.workdir))
    return forbidden


def _check_config(
    pipeline: PipelineSchema,
    config: ImageConfig,
    build_identifier: str | None,
) -> None:
    runtime = pipeline.runtime
    if config.entrypoint != [runtime.binary_path]:
        raise ImageVerificationError(
            f"entrypoint is {config.entrypoint}, expected [{runtime.binary_path!r}]",
            code="entrypoint_mismatch",
        )
    if config.cmd:
        raise ImageVerificationError(
            f"image declares default arguments {config.cmd}",
            code="entrypoint_mismatch",
        )
    for asset in runtime.assets:
        value = config.env.get(asset.env_var)
        if value is None:
            raise ImageVerificationError(
                f"{asset.env_var} is not set in the image", code="asset_env_missing"
            )
        if value != asset.destination or not PurePosixPath(value).is_absolute():
            raise ImageVerificationError(
                f"{asset.env_var}={value}, expected {asset.destination}",
                code="asset_env_mismatch",
            )
    if build_identifier is not None and runtime.expose_build_identifier:
        name = pipeline.parameters.build_identifier_arg
        actual = config.env.get(name, "")
        if actual != build_identifier:
            raise ImageVerificationError(
                f"{name}={actual!r}, expected {build_identifier!r}",
                code="build_identifier_mismatch",
            )


def verify_image(
    pipeline: PipelineSchema,
    config: ImageConfig,
    files: dict[str, ImageFile],
    entries: set[str],
    snapshot: SourceSnapshot,
    build_identifier: str | None = None,
) -> list[ArtifactInfo]:
    """Verify a runtime image against its pipeline and source snapshot.

    Args:
        pipeline: Pipeline definition.
        config: Parsed image configuration.
        files: Regular files in the image filesystem.
        entries: Every entry path in the image filesystem.
        snapshot: Source preflight snapshot.
        build_identifier: Expected build identifier; None skips the check.

    Returns:
        ArtifactInfo for the binary and every asset file.

    Raises:
        ImageVerificationError: If the image does not match.
    """
    runtime = pipeline.runtime
    _check_config(pipeline, config, build_identifier)

    binary = files.get(runtime.binary_path)
    if binary is None:
        raise ImageVerificationError(
            f"binary {runtime.binary_path} missing from image", code="binary_missing"
        )
    if not binary.is_executable:
        raise ImageVerificationError(
            f"binary {runtime.binary_path} is not executable",
            code="binary_not_executable",
        )

    workdir = PurePosixPath(runtime.workdir)
    asset_roots = [PurePosixPath(a.destination) for a in runtime.assets]
    executables = sorted(
        f.path
        for f in files.values()
        if f.is_executable
        and is_within(PurePosixPath(f.path), workdir)
        and not any(is_within(PurePosixPath(f.path), r) for r in asset_roots)
    )
    if executables != [runtime.binary_path]:
        raise ImageVerificationError(
            f"expected exactly one executable under {workdir}, found {executables}",
            code="unexpected_executables",
        )

    for forbidden in _forbidden_paths(pipeline):
        leaked = sorted(e for e in entries if is_within(PurePosixPath(e), forbidden))
        if leaked:
            raise ImageVerificationError(
                f"build-only path present in runtime image: {leaked[0]}",
                code="build_leak",
            )

    artifacts = [
        ArtifactInfo(
            path=binary.path,
            size_bytes=binary.size_bytes,
            sha256=binary.sha256,
            mode=binary.mode,
            kind=EXECUTABLE_KIND,
        )
    ]
    for asset in runtime.assets:
        source_dir = snapshot.source_dir / asset.source
        for rel_path in snapshot.asset_files.get(asset.destination, []):
            image_path = str(PurePosixPath(asset.destination) / rel_path)
            image_file = files.get(image_path)
            if image_file is None:
                raise ImageVerificationError(
                    f"asset file {image_path} missing from image",
                    code="asset_missing",
                )
            expected = compute_file_hash(source_dir / rel_path)
            if image_file.sha256 != expected:
                raise ImageVerificationError(
                    f"asset file {image_path} differs from {asset.source}/{rel_path}",
                    code="asset_mismatch",
                )
            artifacts.append(
                ArtifactInfo(
                    path=image_path,
                    size_bytes=image_file.size_bytes,
                    sha256=image_file.sha256,
                    mode=image_file.mode,
                    kind=MIGRATION_KIND,
                    env_var=asset.env_var,
                )
            )

    logger.info(
        "Verified image %s: binary plus %d asset files",
        config.image_id[:19],
        len(artifacts) - 1,
    )
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    build_id: int | None = None,
    cache_key: str | None = None,
    pipeline_name: str | None = None,
    image: dict[str, Any] | None = None,
    build_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifacts: Verified image contents.
        build_id: Optional database build ID.
        cache_key: Optional cache key.
        pipeline_name: Optional pipeline name.
        image: Optional image reference data (id, tag, env, entrypoint).
        build_inputs: Optional build inputs dictionary.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if build_id is not None:
        manifest["build_id"] = build_id
    if cache_key:
        manifest["cache_key"] = cache_key
    if pipeline_name:
        manifest["pipeline"] = pipeline_name
    if image:
        manifest["image"] = image
    if build_inputs:
        manifest["build_inputs"] = build_inputs

    manifest["summary"] = {
        "total_files": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "executables": [a.path for a in artifacts if a.kind == EXECUTABLE_KIND],
        "asset_dirs": sorted({a.env_var for a in artifacts if a.env_var}),
    }

    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "EXECUTABLE_KIND",
    "MIGRATION_KIND",
    "ImageConfig",
    "ImageFile",
    "ImageVerificationError",
    "generate_manifest",
    "parse_image_config",
    "read_image_files",
    "verify_image",
    "write_manifest",
]
