"""SQLAlchemy 2.0 ORM models for the UGC pipeline engine."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, ForeignKey, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, matching SQLite's CURRENT_TIMESTAMP."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class PipelineBatch(Base):
    """Group of jobs sharing one source video.

    Deleting a batch detaches its jobs (batch_id -> NULL); the jobs and
    their artifacts stay.
    """
    __tablename__ = "pipeline_batches"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    total_jobs: Mapped[int] = mapped_column(Integer, default=0)
    completed_jobs: Mapped[int] = mapped_column(Integer, default=0)
    failed_jobs: Mapped[int] = mapped_column(Integer, default=0)
    pipeline: Mapped[list] = mapped_column(JSON, default=list)  # master pipeline before expansion
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class Job(Base):
    """One pipeline run against one source."""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="queued", index=True)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, default=0)
    label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pipeline: Mapped[list] = mapped_column(JSON, default=list)  # snapshot of steps
    source: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {kind, url}
    output_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    step_results: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_request: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {endpoint, request_id}
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("pipeline_batches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class ReferenceImage(Base):
    """Stored reference image (a model's face/pose photo) addressable by id."""
    __tablename__ = "reference_images"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String(1000))
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class MusicTrack(Base):
    """Background music track addressable by id from mix-audio steps."""
    __tablename__ = "music_tracks"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    url: Mapped[str] = mapped_column(String(1000))
    duration: Mapped[Optional[float]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
