"""Source tree preflight and hashing.

This module handles:
- Checking the source checkout before any build step runs
- Checking the configuration override exists (no silent fallback)
- Checking the asset directories shipped in the runtime image
- Computing deterministic hashes of files and directory trees

A missing override or asset directory fails here, before compilation.
"""

from __future__ import annotations

import hashlib
import logging
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collab_imagegen.pipeline.schema import (
        AssetDirSchema,
        ConfigOverrideSchema,
        PipelineSchema,
    )

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class SourceCheckError(Exception):
    """Raised when the source tree is not fit to build from."""

    def __init__(self, message: str, code: str = "source_check_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class SourceSnapshot:
    """Hashes of the inputs the pipeline reads from the source tree.

    Attributes:
        source_dir: Resolved source tree root.
        override_sha256: SHA-256 of the configuration override file.
        asset_hashes: Tree hash per asset destination.
        asset_files: Relative file paths per asset destination.
    """

    source_dir: Path
    override_sha256: str
    asset_hashes: dict[str, str]
    asset_files: dict[str, list[str]]


def _validate_path_within_base(path: Path, base: Path, path_type: str) -> Path:
    """Validate that a path is contained within a base directory.

    Args:
        path: Path to validate (will be resolved).
        base: Base directory (will be resolved).
        path_type: Description of the path for error messages.

    Returns:
        The resolved path.

    Raises:
        SourceCheckError: If path escapes base directory.
    """
    resolved_path = path.resolve()
    resolved_base = base.resolve()

    try:
        resolved_path.relative_to(resolved_base)
    except ValueError:
        raise SourceCheckError(
            f"{path_type} path traversal detected: {path} resolves outside {base}",
            code="path_traversal",
        ) from None

    return resolved_path


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def list_tree_files(directory: Path) -> list[str]:
    """List regular files under a directory as sorted POSIX relative paths."""
    if not directory.exists():
        return []
    return sorted(
        path.relative_to(directory).as_posix()
        for path in directory.rglob("*")
        if path.is_file()
    )


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over:
    - Sorted file paths (relative to directory)
    - File contents
    - File modes (lower 9 bits: rwxrwxrwx)

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    for rel_path in list_tree_files(directory):
        path = directory / rel_path
        mode = stat.S_IMODE(path.stat().st_mode)
        # Hash: path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


def check_source_tree(source_dir: Path) -> Path:
    """Check that a directory looks like a cargo workspace checkout.

    Args:
        source_dir: Source tree root.

    Returns:
        The resolved source tree root.

    Raises:
        SourceCheckError: If the directory is missing or has no Cargo.toml.
    """
    if not source_dir.exists():
        raise SourceCheckError(
            f"Source tree not found: {source_dir}", code="source_not_found"
        )
    if not source_dir.is_dir():
        raise SourceCheckError(
            f"Source path is not a directory: {source_dir}", code="source_not_dir"
        )
    if not (source_dir / "Cargo.toml").is_file():
        raise SourceCheckError(
            f"No Cargo.toml in source tree: {source_dir}", code="not_a_cargo_workspace"
        )
    return source_dir.resolve()


def check_config_override(source_dir: Path, override: ConfigOverrideSchema) -> Path:
    """Check the configuration override file is present and usable.

    Args:
        source_dir: Source tree root.
        override: Override definition from the pipeline.

    Returns:
        Resolved path of the override file.

    Raises:
        SourceCheckError: If the override is missing, empty, or escapes the tree.
    """
    override_path = source_dir / override.source
    resolved = _validate_path_within_base(override_path, source_dir, "config_override")

    if not resolved.exists():
        raise SourceCheckError(
            f"Configuration override not found: {override.source}",
            code="config_override_not_found",
        )
    if not resolved.is_file():
        raise SourceCheckError(
            f"Configuration override is not a file: {override.source}",
            code="config_override_not_file",
        )
    if resolved.stat().st_size == 0:
        raise SourceCheckError(
            f"Configuration override is empty: {override.source}",
            code="config_override_empty",
        )
    return resolved


def check_asset_dirs(
    source_dir: Path,
    assets: list[AssetDirSchema],
    allow_empty: bool = False,
) -> dict[str, Path]:
    """Check every asset directory exists (and holds files unless allowed).

    Args:
        source_dir: Source tree root.
        assets: Asset directory definitions.
        allow_empty: Accept directories without any file.

    Returns:
        Mapping of asset destination to resolved source directory.

    Raises:
        SourceCheckError: If a directory is missing, empty, or escapes the tree.
    """
    resolved: dict[str, Path] = {}
    for asset in assets:
        asset_path = source_dir / asset.source
        asset_dir = _validate_path_within_base(asset_path, source_dir, "asset")
        if not asset_dir.is_dir():
            raise SourceCheckError(
                f"Asset directory not found: {asset.source}",
                code="asset_dir_not_found",
            )
        if not list_tree_files(asset_dir):
            if not allow_empty:
                raise SourceCheckError(
                    f"Asset directory is empty: {asset.source}",
                    code="asset_dir_empty",
                )
            logger.warning("Asset directory %s is empty", asset.source)
        resolved[asset.destination] = asset_dir
    return resolved


def preflight(
    source_dir: Path,
    pipeline: PipelineSchema,
    allow_empty_assets: bool = False,
) -> SourceSnapshot:
    """Run every source check and hash the inputs the pipeline reads.

    Args:
        source_dir: Source tree root.
        pipeline: Pipeline definition.
        allow_empty_assets: Accept empty asset directories.

    Returns:
        SourceSnapshot of the checked inputs.

    Raises:
        SourceCheckError: If any check fails.
    """
    root = check_source_tree(source_dir)
    override_path = check_config_override(root, pipeline.builder.config_override)
    asset_dirs = check_asset_dirs(root, pipeline.runtime.assets, allow_empty_assets)

    snapshot = SourceSnapshot(
        source_dir=root,
        override_sha256=compute_file_hash(override_path),
        asset_hashes={d: compute_tree_hash(p) for d, p in asset_dirs.items()},
        asset_files={d: list_tree_files(p) for d, p in asset_dirs.items()},
    )
    logger.info(
        "Source preflight passed for %s (%d asset dirs)", root, len(asset_dirs)
    )
    return snapshot


__all__ = [
    "HASH_CHUNK_SIZE",
    "SourceCheckError",
    "SourceSnapshot",
    "check_asset_dirs",
    "check_config_override",
    "check_source_tree",
    "compute_file_hash",
    "compute_tree_hash",
    "list_tree_files",
    "preflight",
]
