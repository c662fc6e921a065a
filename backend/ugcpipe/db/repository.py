"""Persistence interface for jobs, batches and reference media.

Every method opens its own short-lived session so runners executing
concurrently never share a session across await points. Reads return
detached pydantic snapshots (JobRecord / BatchRecord), never ORM rows.

Updates are partial merges: only fields explicitly set on the JobUpdate /
BatchUpdate are written.
"""

import logging
import uuid
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import func as sa_func, select, update as sa_update

from ugcpipe.db.engine import async_session
from ugcpipe.db.models import Job, MusicTrack, PipelineBatch, ReferenceImage, utcnow
from ugcpipe.orchestrator.state import (
    BATCH_PENDING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    TERMINAL_BATCH_STATES,
    aggregate_batch_status,
)
from ugcpipe.schemas.pipeline import (
    BatchRecord,
    BatchUpdate,
    JobRecord,
    JobSpec,
    JobUpdate,
    dump_pipeline,
)

logger = logging.getLogger(__name__)


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _new_job_row(spec: JobSpec, batch_id: Optional[uuid.UUID] = None) -> Job:
    return Job(
        name=spec.name,
        status=JOB_QUEUED,
        label="Queued",
        pipeline=dump_pipeline(spec.pipeline),
        source=spec.source.model_dump() if spec.source else None,
        total_steps=sum(1 for step in spec.pipeline if step.enabled),
        current_step=0,
        step_results=[],
        batch_id=batch_id,
    )


class PipelineStore:
    """Async persistence for the pipeline engine."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, spec: JobSpec) -> JobRecord:
        async with self._session_factory() as session:
            job = _new_job_row(spec)
            session.add(job)
            await session.commit()
            await session.refresh(job)
            logger.info("Created job %s with %d enabled steps", job.id, job.total_steps)
            return JobRecord.model_validate(job)

    async def get_job(self, job_id: uuid.UUID) -> Optional[JobRecord]:
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            return JobRecord.model_validate(job) if job else None

    async def update_job(self, job_id: uuid.UUID, changes: JobUpdate) -> Optional[JobRecord]:
        """Merge explicitly-set fields of ``changes`` into the stored job.

        Returns the updated snapshot, or None if the job does not exist.
        """
        values = changes.model_dump(exclude_unset=True)
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                logger.warning("update_job: job %s not found", job_id)
                return None
            for field, value in values.items():
                setattr(job, field, value)
            await session.commit()
            return JobRecord.model_validate(job)

    async def touch_job(self, job_id: uuid.UUID) -> None:
        """Record liveness for a processing job without changing any field.

        Written on every provider poll so ``updated_at`` tracks the worker,
        not the last status change.
        """
        async with self._session_factory() as session:
            await session.execute(
                sa_update(Job)
                .where(Job.id == job_id)
                .where(Job.status == JOB_PROCESSING)
                .values(updated_at=utcnow())
            )
            await session.commit()

    async def list_jobs(self, limit: int = 50, status: Optional[str] = None) -> list[JobRecord]:
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit)
        if status:
            stmt = stmt.where(Job.status == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [JobRecord.model_validate(j) for j in result.scalars().all()]

    async def list_jobs_by_batch(self, batch_id: uuid.UUID) -> list[JobRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Job).where(Job.batch_id == batch_id).order_by(Job.created_at)
            )
            return [JobRecord.model_validate(j) for j in result.scalars().all()]

    async def list_stuck_jobs(self, threshold_minutes: int) -> list[JobRecord]:
        """Jobs still ``processing`` with no progress for longer than the threshold."""
        cutoff = utcnow() - timedelta(minutes=threshold_minutes)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Job)
                .where(Job.status == JOB_PROCESSING)
                .where(Job.updated_at < cutoff)
                .order_by(Job.updated_at)
            )
            return [JobRecord.model_validate(j) for j in result.scalars().all()]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        name: str,
        pipeline: list,
        children: Iterable[JobSpec],
    ) -> tuple[BatchRecord, list[JobRecord]]:
        """Create a batch and all of its child jobs in one transaction."""
        async with self._session_factory() as session:
            batch = PipelineBatch(
                name=name,
                status=BATCH_PENDING,
                pipeline=dump_pipeline(pipeline),
            )
            session.add(batch)
            await session.flush()

            jobs = [_new_job_row(spec, batch_id=batch.id) for spec in children]
            session.add_all(jobs)
            batch.total_jobs = len(jobs)
            await session.commit()

            await session.refresh(batch)
            for job in jobs:
                await session.refresh(job)
            logger.info("Created batch %s (%s) with %d jobs", batch.id, name, len(jobs))
            return (
                BatchRecord.model_validate(batch),
                [JobRecord.model_validate(j) for j in jobs],
            )

    async def get_batch(self, batch_id: uuid.UUID) -> Optional[BatchRecord]:
        async with self._session_factory() as session:
            batch = await session.get(PipelineBatch, batch_id)
            return BatchRecord.model_validate(batch) if batch else None

    async def update_batch(self, batch_id: uuid.UUID, changes: BatchUpdate) -> Optional[BatchRecord]:
        values = changes.model_dump(exclude_unset=True)
        async with self._session_factory() as session:
            batch = await session.get(PipelineBatch, batch_id)
            if batch is None:
                return None
            for field, value in values.items():
                setattr(batch, field, value)
            await session.commit()
            return BatchRecord.model_validate(batch)

    async def list_batches(self, limit: int = 50) -> list[BatchRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PipelineBatch).order_by(PipelineBatch.created_at.desc()).limit(limit)
            )
            return [BatchRecord.model_validate(b) for b in result.scalars().all()]

    async def delete_batch(self, batch_id: uuid.UUID) -> bool:
        """Delete a batch, detaching (not deleting) its jobs."""
        async with self._session_factory() as session:
            batch = await session.get(PipelineBatch, batch_id)
            if batch is None:
                return False
            await session.execute(
                sa_update(Job).where(Job.batch_id == batch_id).values(batch_id=None)
            )
            await session.delete(batch)
            await session.commit()
            logger.info("Deleted batch %s; child jobs detached", batch_id)
            return True

    async def recompute_batch_progress(self, batch_id: uuid.UUID) -> Optional[BatchRecord]:
        """Recount child outcomes and derive the batch status from them."""
        async with self._session_factory() as session:
            batch = await session.get(PipelineBatch, batch_id)
            if batch is None:
                return None

            result = await session.execute(
                select(Job.status, sa_func.count(Job.id))
                .where(Job.batch_id == batch_id)
                .group_by(Job.status)
            )
            counts = {status: count for status, count in result.all()}
            total = sum(counts.values())
            completed = counts.get(JOB_COMPLETED, 0)
            failed = counts.get(JOB_FAILED, 0)

            batch.total_jobs = total
            batch.completed_jobs = completed
            batch.failed_jobs = failed
            batch.status = aggregate_batch_status(completed, failed, total)
            if batch.status in TERMINAL_BATCH_STATES and batch.completed_at is None:
                batch.completed_at = utcnow()
            await session.commit()

            logger.info(
                "Batch %s progress: %d completed, %d failed, %d total -> %s",
                batch_id, completed, failed, total, batch.status,
            )
            return BatchRecord.model_validate(batch)

    # ------------------------------------------------------------------
    # Reference media
    # ------------------------------------------------------------------

    async def create_reference_image(self, url: str, name: Optional[str] = None) -> uuid.UUID:
        async with self._session_factory() as session:
            image = ReferenceImage(url=url, name=name)
            session.add(image)
            await session.commit()
            return image.id

    async def get_reference_image_url(self, image_id) -> Optional[str]:
        image_uuid = _parse_uuid(image_id)
        if image_uuid is None:
            return None
        async with self._session_factory() as session:
            image = await session.get(ReferenceImage, image_uuid)
            return image.url if image else None

    async def create_music_track(self, name: str, url: str, duration: Optional[float] = None) -> uuid.UUID:
        async with self._session_factory() as session:
            track = MusicTrack(name=name, url=url, duration=duration)
            session.add(track)
            await session.commit()
            return track.id

    async def get_music_track_url(self, track_id) -> Optional[str]:
        track_uuid = _parse_uuid(track_id)
        if track_uuid is None:
            return None
        async with self._session_factory() as session:
            track = await session.get(MusicTrack, track_uuid)
            return track.url if track else None
