"""Batch coordinator: one shared source, many child jobs run concurrently.

A batch pipeline carries a ``batch-generate`` step listing several reference
images. ``create_pipeline_batch`` expands it into one child job per image;
``BatchCoordinator.run_batch`` stages the shared source once and fans the
children out. Batch status is derived from child outcomes by
``PipelineStore.recompute_batch_progress`` (each child's runner calls it on
finish).
"""

import asyncio
import logging
import uuid
from typing import Iterable, Optional

from ugcpipe.db.repository import PipelineStore
from ugcpipe.errors import ConfigError
from ugcpipe.orchestrator.state import BATCH_PROCESSING, JOB_FAILED
from ugcpipe.pipeline.runner import JobRunner
from ugcpipe.schemas.pipeline import (
    BatchGenerateStep,
    BatchImage,
    BatchRecord,
    BatchUpdate,
    GenerateConfig,
    GenerateStep,
    JobRecord,
    JobSpec,
    JobUpdate,
    SourceDescriptor,
)
from ugcpipe.services.media_staging import MediaStager, ScratchScope
from ugcpipe.services.resolver import VideoResolver

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Batch expansion
# ---------------------------------------------------------------------------

def _find_batch_step(pipeline: list) -> int:
    indices = [
        i for i, step in enumerate(pipeline)
        if isinstance(step, BatchGenerateStep) and step.enabled
    ]
    if not indices:
        raise ConfigError("Pipeline has no enabled batch-generate step")
    if len(indices) > 1:
        raise ConfigError("Pipeline may contain only one batch-generate step")
    return indices[0]


def expand_batch_pipeline(pipeline: list, image: BatchImage) -> list:
    """Clone ``pipeline`` with the batch step replaced by a single-image generate step.

    The replacement keeps the batch step's id so attach-clip steps that
    reference it still resolve.
    """
    if not (image.image_id or image.image_url):
        raise ConfigError("Each batch image needs an image_id or image_url")

    index = _find_batch_step(pipeline)
    batch_step = pipeline[index]
    shared = batch_step.config.model_dump(exclude={"images", "image_id", "image_url"})
    single = GenerateStep(
        id=batch_step.id,
        enabled=True,
        config=GenerateConfig(**shared, image_id=image.image_id, image_url=image.image_url),
    )

    expanded = [step.model_copy(deep=True) for step in pipeline]
    expanded[index] = single
    return expanded


async def create_pipeline_batch(
    store: PipelineStore,
    name: str,
    pipeline: list,
    source: Optional[SourceDescriptor] = None,
    images: Optional[list[BatchImage]] = None,
) -> tuple[BatchRecord, list[JobRecord]]:
    """Persist a batch and one queued child job per reference image.

    ``images`` overrides the list carried in the batch step's config.
    """
    batch_step = pipeline[_find_batch_step(pipeline)]
    images = images if images is not None else batch_step.config.images
    if not images:
        raise ConfigError("batch-generate step has no images")

    children = []
    for n, image in enumerate(images, start=1):
        children.append(JobSpec(
            pipeline=expand_batch_pipeline(pipeline, image),
            source=source,
            name=f"{name} - {image.filename or n}",
        ))
    return await store.create_batch(name, pipeline, children)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class BatchCoordinator:
    """Stages a batch's shared source once and runs every child concurrently."""

    def __init__(
        self,
        store: PipelineStore,
        runner: JobRunner,
        resolver: VideoResolver,
        stager: MediaStager,
    ):
        self.store = store
        self.runner = runner
        self.resolver = resolver
        self.stager = stager

    async def stage_shared_source(
        self,
        source: Optional[SourceDescriptor],
        owner_id: uuid.UUID,
    ) -> Optional[SourceDescriptor]:
        """Return a directly downloadable descriptor for ``source``.

        Social references are resolved, staged and published exactly once;
        an ``upload`` descriptor comes back unchanged with no lookup.
        """
        if source is None or source.kind == "upload":
            return source

        play_url = await self.resolver.resolve(source.url)
        with ScratchScope() as scratch:
            local = scratch.track(await self.stager.stage(play_url, owner_id, "batch-source"))
            durable_url = await self.stager.publish(local, f"batch-source-{owner_id}")
        logger.info(f"Batch {owner_id}: shared source {source.url} staged as {durable_url}")
        return SourceDescriptor(kind="upload", url=durable_url)

    async def run_batch(
        self,
        batch_id: uuid.UUID,
        child_job_ids: Optional[Iterable[uuid.UUID]] = None,
        shared_source: Optional[SourceDescriptor] = None,
    ) -> Optional[BatchRecord]:
        """Run every child job of ``batch_id`` and return the final batch snapshot.

        Children default to all jobs linked to the batch; the shared source
        defaults to the first child's source.
        """
        children = await self.store.list_jobs_by_batch(batch_id)
        if child_job_ids is not None:
            wanted = set(child_job_ids)
            children = [job for job in children if job.id in wanted]
        job_ids = [job.id for job in children]
        if shared_source is None and children:
            shared_source = children[0].source

        logger.info(f"Batch {batch_id}: starting {len(job_ids)} child job(s)")

        try:
            staged = await self.stage_shared_source(shared_source, batch_id)
        except Exception as e:
            logger.error(f"Batch {batch_id}: shared source staging failed: {e}")
            message = str(e) or type(e).__name__
            for job_id in job_ids:
                await self.store.update_job(job_id, JobUpdate(
                    status=JOB_FAILED, error=message, label="Failed",
                ))
            return await self.store.recompute_batch_progress(batch_id)

        # Rewrite only after the shared copy is durable
        if staged is not None:
            for job in children:
                if job.source != staged:
                    await self.store.update_job(job.id, JobUpdate(source=staged))

        await self.store.update_batch(batch_id, BatchUpdate(status=BATCH_PROCESSING))

        outcomes = await asyncio.gather(
            *(self.runner.run(job_id) for job_id in job_ids),
            return_exceptions=True,
        )
        for job_id, outcome in zip(job_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Batch {batch_id}: child {job_id} crashed: {outcome}")
                await self.store.update_job(job_id, JobUpdate(
                    status=JOB_FAILED, error=str(outcome) or type(outcome).__name__, label="Failed",
                ))

        batch = await self.store.recompute_batch_progress(batch_id)
        if batch is not None:
            logger.info(
                f"Batch {batch_id} finished: {batch.status} "
                f"({batch.completed_jobs} completed, {batch.failed_jobs} failed of {batch.total_jobs})"
            )
        return batch
