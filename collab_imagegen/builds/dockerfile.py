"""Dockerfile rendering.

This module turns composed stages into a BuildKit Dockerfile. Cache scopes
become ``--mount=type=cache`` options on the RUN step that needs them, so
they exist only for the duration of that step.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from collab_imagegen.pipeline.schema import PipelineSchema
from collab_imagegen.pipeline.steps import (
    Arg,
    CacheMount,
    Copy,
    Entrypoint,
    Env,
    FromImage,
    Instruction,
    Run,
    Stage,
    Workdir,
    compose_stages,
)

logger = logging.getLogger(__name__)

CONTINUATION = " \\\n    "
_NEEDS_QUOTING = re.compile(r"[\s\"'\\]")


def _quote(value: str) -> str:
    if value and not _NEEDS_QUOTING.search(value):
        return value
    return json.dumps(value)


def render_mount(mount: CacheMount) -> str:
    """Render a cache mount option."""
    return (
        f"--mount=type=cache,id={mount.id},target={mount.target},"
        f"sharing={mount.sharing}"
    )


def render_instruction(instruction: Instruction) -> str:
    """Render a single instruction.

    Args:
        instruction: Instruction to render.

    Returns:
        Dockerfile text, possibly spanning continuation lines.

    Raises:
        TypeError: If the instruction type is unknown.
    """
    if isinstance(instruction, FromImage):
        return f"FROM {instruction.image} AS {instruction.alias}"
    if isinstance(instruction, Workdir):
        return f"WORKDIR {instruction.path}"
    if isinstance(instruction, Copy):
        from_flag = ""
        if instruction.from_stage:
            from_flag = f"--from={instruction.from_stage} "
        return f"COPY {from_flag}{instruction.source} {instruction.destination}"
    if isinstance(instruction, Arg):
        if instruction.default is None:
            return f"ARG {instruction.name}"
        return f"ARG {instruction.name}={_quote(instruction.default)}"
    if isinstance(instruction, Env):
        return f"ENV {instruction.name}={_quote(instruction.value)}"
    if isinstance(instruction, Run):
        parts = [render_mount(m) for m in instruction.mounts]
        parts.append(" && \\\n    ".join(instruction.commands))
        return "RUN " + CONTINUATION.join(parts)
    if isinstance(instruction, Entrypoint):
        return f"ENTRYPOINT {json.dumps(list(instruction.argv))}"
    raise TypeError(f"Unknown instruction type: {type(instruction).__name__}")


def render_stage(stage: Stage) -> list[str]:
    """Render a stage, marking each pipeline state it enters."""
    lines: list[str] = []
    current = None
    for instruction in stage.instructions:
        if instruction.state != current:
            current = instruction.state
            lines.append(f"# {current.value}")
        lines.append(render_instruction(instruction))
    return lines


def render_dockerfile(
    pipeline: PipelineSchema,
    stages: list[Stage] | None = None,
) -> str:
    """Render the full multi-stage Dockerfile for a pipeline.

    Args:
        pipeline: Pipeline definition.
        stages: Pre-composed stages; composed and validated if omitted.

    Returns:
        Dockerfile text ending with a newline.
    """
    if stages is None:
        stages = compose_stages(pipeline)

    lines = [
        f"# syntax = {pipeline.syntax}",
        f"# Generated by collab-imagegen from pipeline '{pipeline.name}'.",
    ]
    for stage in stages:
        lines.append("")
        lines.extend(render_stage(stage))
    return "\n".join(lines) + "\n"


def write_dockerfile(text: str, output_path: Path) -> Path:
    """Write a rendered Dockerfile.

    Args:
        text: Rendered Dockerfile.
        output_path: Destination file.

    Returns:
        Path to the written file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(text, encoding="utf-8")
    logger.info("Wrote Dockerfile to %s", output_path)
    return output_path


__all__ = [
    "render_dockerfile",
    "render_instruction",
    "render_mount",
    "render_stage",
    "write_dockerfile",
]
