"""Shared fixtures for collab_imagegen tests."""

from pathlib import Path

import pytest

from collab_imagegen.pipeline.schema import PipelineSchema, default_pipeline

OVERRIDE_TEXT = '[build]\nrustflags = ["-C", "symbol-mangling-version=v0"]\n'
MIGRATION_SQL = "CREATE TABLE users (id INTEGER PRIMARY KEY);\n"
LLM_MIGRATION_SQL = "CREATE TABLE models (id INTEGER PRIMARY KEY);\n"


@pytest.fixture
def pipeline() -> PipelineSchema:
    """The built-in collab pipeline."""
    return default_pipeline()


@pytest.fixture
def collab_source(tmp_path: Path) -> Path:
    """Create a minimal checkout with the files the pipeline reads."""
    root = tmp_path / "zed"
    (root / ".cargo").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[workspace]\nmembers = ["crates/*"]\n')
    (root / ".cargo" / "collab-config.toml").write_text(OVERRIDE_TEXT)
    (root / ".cargo" / "config.toml").write_text("[alias]\nxtask = 'run'\n")

    migrations = root / "crates" / "collab" / "migrations"
    migrations.mkdir(parents=True)
    (migrations / "20240101000000_init.sql").write_text(MIGRATION_SQL)

    llm = root / "crates" / "collab" / "migrations_llm"
    llm.mkdir(parents=True)
    (llm / "20240101000000_llm.sql").write_text(LLM_MIGRATION_SQL)
    return root
