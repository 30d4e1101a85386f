"""Pipeline definition module.

This module handles:
- Pipeline definition schema (builder stage, runtime stage, parameters)
- Loading definitions from YAML/JSON files
- Composing definitions into ordered stage instructions
- Validating pipeline invariants
"""

from collab_imagegen.pipeline.schema import (
    BuildParameters,
    PipelineSchema,
    default_pipeline,
)

__all__ = ["BuildParameters", "PipelineSchema", "default_pipeline"]
