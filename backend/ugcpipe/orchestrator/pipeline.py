"""Engine wiring and top-level entry points shared by the API and CLI.

``build_engine`` assembles the store, staging, resolver, generation adapter,
step processor, job runner and batch coordinator from settings. The
``run_*`` helpers open an engine, do one unit of work and close the HTTP
clients they created.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from ugcpipe.db.repository import PipelineStore
from ugcpipe.orchestrator.recovery import RecoveryResult, recover_stuck_jobs
from ugcpipe.pipeline.batch import BatchCoordinator
from ugcpipe.pipeline.runner import JobRunner
from ugcpipe.pipeline.steps import StepProcessor
from ugcpipe.schemas.pipeline import BatchRecord, JobRecord
from ugcpipe.services.generation_adapter import GenerationAdapter
from ugcpipe.services.media_staging import MediaStager
from ugcpipe.services.resolver import VideoResolver
from ugcpipe.services.transcoder import Transcoder

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: PipelineStore
    stager: MediaStager
    resolver: VideoResolver
    adapter: GenerationAdapter
    processor: StepProcessor
    runner: JobRunner
    coordinator: BatchCoordinator

    async def close(self) -> None:
        await self.stager.close()
        await self.resolver.close()


def build_engine(
    store: Optional[PipelineStore] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> Engine:
    store = store or PipelineStore()
    stager = MediaStager()
    resolver = VideoResolver()
    adapter = GenerationAdapter()
    processor = StepProcessor(store, stager, adapter, resolver, Transcoder())
    runner = JobRunner(store, processor, stager, resolver, progress_callback=progress_callback)
    coordinator = BatchCoordinator(store, runner, resolver, stager)
    return Engine(store, stager, resolver, adapter, processor, runner, coordinator)


async def run_job(
    job_id: uuid.UUID,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> JobRecord:
    """Run one job to a terminal state."""
    engine = build_engine(progress_callback=progress_callback)
    try:
        return await engine.runner.run(job_id)
    finally:
        await engine.close()


async def resume_job(
    job_id: uuid.UUID,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> JobRecord:
    """Continue an interrupted job from its persisted cursor."""
    engine = build_engine(progress_callback=progress_callback)
    try:
        return await engine.runner.resume(job_id)
    finally:
        await engine.close()


async def run_pipeline_batch(
    batch_id: uuid.UUID,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> Optional[BatchRecord]:
    """Stage the batch's shared source and run all of its children."""
    engine = build_engine(progress_callback=progress_callback)
    try:
        return await engine.coordinator.run_batch(batch_id)
    finally:
        await engine.close()


async def recover(threshold_minutes: Optional[int] = None) -> list[RecoveryResult]:
    """Find and recover stuck jobs."""
    engine = build_engine()
    try:
        return await recover_stuck_jobs(engine.store, engine.runner, engine.adapter, threshold_minutes)
    finally:
        await engine.close()
