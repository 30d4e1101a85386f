"""Build ORM models.

This module defines the BuildRecord and Artifact models for storing
pipeline runs and the verified contents of the runtime images they produce.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from collab_imagegen.db import Base
from collab_imagegen.types import BuildStatus


class BuildRecord(Base):
    """ORM model for pipeline runs.

    A BuildRecord captures a single invocation of the two-stage pipeline:
    the inputs it was given, the candidate and final image tags, where it
    stopped if it failed, and references to the files it wrote.

    Attributes:
        id: Primary key.
        pipeline_name: Name of the pipeline definition.
        image_tag: Final image reference (set on promotion).
        candidate_tag: Temporary tag the image is built under.
        image_id: Content-addressed image id of the runtime image.
        cache_key: Hash of input_snapshot (set once preflight passes).
        input_snapshot: JSON representation of all build inputs.
        panic_policy: Panic policy the binary was compiled with.
        build_identifier: Opaque build identifier (may be empty).
        status: Build status (pending, running, succeeded, failed).
        failed_state: Pipeline state that failed, if known.
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when the run started executing.
        finished_at: Timestamp when the run finished.
        build_dir: Directory holding the log, Dockerfile and manifest.
        log_path: Path to the docker build log.
        dockerfile_path: Path to the rendered Dockerfile.
        manifest_path: Path to the manifest of a verified image.
        error_type: Error code if the run failed.
        error_message: Error message if the run failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    pipeline_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Image references
    image_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    candidate_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Cache key and input snapshot
    cache_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    panic_policy: Mapped[str] = mapped_column(String(20), nullable=False)
    build_identifier: Mapped[str] = mapped_column(
        String(128), nullable=False, default=""
    )

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    failed_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Build paths
    build_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    dockerfile_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    manifest_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="build", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_build_records_pipeline_status", "pipeline_name", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        key = (self.cache_key or "")[:16]
        return (
            f"<BuildRecord(id={self.id}, pipeline='{self.pipeline_name}', "
            f"status='{self.status}', cache_key='{key}...')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        error_type: str | None = None,
        message: str | None = None,
        state: str | None = None,
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Error code of the failure.
            message: Error message details.
            state: Pipeline state that failed.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message
        if state:
            self.failed_state = state

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value

    @property
    def duration_seconds(self) -> float | None:
        """Wall-clock duration, or None while unfinished."""
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class Artifact(Base):
    """ORM model for files shipped in a runtime image.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        kind: executable or migration.
        path: Absolute path inside the image.
        env_var: Environment variable pointing at the containing directory.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        mode: File mode bits.
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )

    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    env_var: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # File metadata
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    mode: Mapped[int] = mapped_column(Integer, nullable=False)

    build: Mapped["BuildRecord"] = relationship(
        "BuildRecord", back_populates="artifacts"
    )

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, path='{self.path}', "
            f"kind='{self.kind}', size={self.size_bytes})>"
        )


__all__ = ["Artifact", "BuildRecord"]
