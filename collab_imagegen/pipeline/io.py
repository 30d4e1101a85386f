"""Pipeline definition import/export.

This module loads pipeline definitions from YAML/JSON files and writes
them back out, so that a checked-in definition can replace the built-in
default.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from collab_imagegen.pipeline.schema import PipelineSchema, default_pipeline


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_pipeline(path: Path) -> PipelineSchema:
    """Load and validate a pipeline definition (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the definition file.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    return PipelineSchema.model_validate(data)


def resolve_pipeline(path: Path | None) -> PipelineSchema:
    """Load a pipeline from a file, or return the built-in default.

    Args:
        path: Optional definition file.

    Returns:
        PipelineSchema instance.
    """
    if path is None:
        return default_pipeline()
    return load_pipeline(path)


def pipeline_to_dict(pipeline: PipelineSchema) -> dict[str, Any]:
    """Convert a pipeline to plain JSON-compatible data."""
    return pipeline.model_dump(mode="json")


def pipeline_to_yaml_string(pipeline: PipelineSchema) -> str:
    """Convert a pipeline to a YAML string.

    Args:
        pipeline: PipelineSchema instance to convert.

    Returns:
        YAML string representation.
    """
    result: str = yaml.dump(
        pipeline_to_dict(pipeline),
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
    )
    return result


def export_pipeline(pipeline: PipelineSchema, path: Path) -> None:
    """Export a pipeline to a file (YAML or JSON).

    Args:
        pipeline: PipelineSchema instance to export.
        path: Path where file should be written.

    Raises:
        ValueError: If file extension is not supported.
    """
    suffix = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix in (".yaml", ".yml"):
        path.write_text(pipeline_to_yaml_string(pipeline), encoding="utf-8")
    elif suffix == ".json":
        with open(path, "w", encoding="utf-8") as f:
            json.dump(pipeline_to_dict(pipeline), f, indent=2, ensure_ascii=False)
            f.write("\n")
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )


__all__ = [
    "export_pipeline",
    "load_json",
    "load_pipeline",
    "load_yaml",
    "pipeline_to_dict",
    "pipeline_to_yaml_string",
    "resolve_pipeline",
]
