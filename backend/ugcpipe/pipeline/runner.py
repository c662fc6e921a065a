"""Job runner: drives one job's pipeline from source to published output.

State machine: queued -> processing -> {completed | failed}

Per run:
1. Mark processing
2. Resolve a social source once, publish it, rewrite the job's source to
   the durable copy
3. Stage the initial artifact (skipped when the first step needs no input)
4. For each enabled step: process, publish, append the result, persist
   cursor/label/results together, release the previous local artifact
5. Mark completed with the last result's URL (or the published source
   when there are no enabled steps)
6. On any error: mark failed; already-published step results stay
7. Recompute the parent batch's progress either way
8. Delete every scratch file this run created

resume() re-enters a processing job at its persisted cursor and, if the
step there has a stored request handle, waits on that handle rather than
submitting again.
"""

import logging
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from ugcpipe.db.models import utcnow
from ugcpipe.db.repository import PipelineStore
from ugcpipe.errors import ConfigError
from ugcpipe.orchestrator.state import JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING
from ugcpipe.pipeline.steps import StepContext, StepProcessor, step_label
from ugcpipe.schemas.pipeline import (
    AttachClipStep,
    GenerateStep,
    JobRecord,
    JobUpdate,
    SourceDescriptor,
    StepResult,
)
from ugcpipe.services.media_staging import MediaStager, ScratchScope
from ugcpipe.services.resolver import VideoResolver

logger = logging.getLogger(__name__)


def _needs_initial_artifact(steps: list) -> bool:
    """False only when the first step generates from an image alone."""
    if not steps:
        return True
    first = steps[0]
    return not (isinstance(first, GenerateStep) and not first.config.needs_input_video)


def _referenced_later(step_id: Optional[str], later_steps: list) -> bool:
    if step_id is None:
        return False
    return any(
        isinstance(s, AttachClipStep) and s.config.source_step_id == step_id
        for s in later_steps
    )


class JobRunner:
    """Executes jobs one at a time per call; many runs may share one runner."""

    def __init__(
        self,
        store: PipelineStore,
        processor: StepProcessor,
        stager: MediaStager,
        resolver: VideoResolver,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.processor = processor
        self.stager = stager
        self.resolver = resolver
        self.progress_callback = progress_callback

    async def run(self, job_id: uuid.UUID) -> JobRecord:
        """Run a job from its first enabled step. Never raises for step failures."""
        return await self._execute(job_id, resume=False)

    async def resume(self, job_id: uuid.UUID) -> JobRecord:
        """Continue an interrupted job from its persisted cursor."""
        return await self._execute(job_id, resume=True)

    # ------------------------------------------------------------------

    async def _execute(self, job_id: uuid.UUID, resume: bool) -> JobRecord:
        job = await self.store.get_job(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")

        logger.info(
            f"{'Resuming' if resume else 'Starting'} job {job_id}, status: {job.status}, "
            f"{len(job.enabled_steps)} enabled step(s)"
        )
        started = time.monotonic()
        try:
            with ScratchScope() as scratch:
                job = await self._drive(job, scratch, resume)
            logger.info(f"Job {job_id} completed in {time.monotonic() - started:.2f}s")
        except Exception as e:
            logger.error(f"Job {job_id} failed: {type(e).__name__}: {e}")
            failed = await self.store.update_job(job_id, JobUpdate(
                status=JOB_FAILED,
                error=str(e) or type(e).__name__,
                label="Failed",
            ))
            job = failed or job
            self._notify("Failed")
        finally:
            if job.batch_id is not None:
                await self._recompute_batch(job.batch_id)
        return job

    async def _drive(self, job: JobRecord, scratch: ScratchScope, resume: bool) -> JobRecord:
        steps = job.enabled_steps
        total = len(steps)

        if resume:
            cursor = len(job.step_results)
            results = list(job.step_results)
            job = await self.store.update_job(job.id, JobUpdate(
                status=JOB_PROCESSING,
                label=f"Resuming at step {min(cursor + 1, total)}/{total}...",
            ))
        else:
            cursor = 0
            results = []
            job = await self.store.update_job(job.id, JobUpdate(
                status=JOB_PROCESSING,
                label="Starting pipeline...",
                current_step=0,
                total_steps=total,
                step_results=[],
                error=None,
                output_url=None,
                pending_request=None,
            ))
        self._notify(job.label)

        staged_source = await self._stabilize_source(job, scratch)
        if staged_source is not None:
            job = await self.store.get_job(job.id)

        # Initial artifact
        current: Optional[Path] = None
        current_owner: Optional[str] = None  # step id that produced `current`
        if cursor > 0:
            current = scratch.track(
                await self.stager.stage(results[-1].output_url, job.id, "resume")
            )
            current_owner = results[-1].step_id
        elif _needs_initial_artifact(steps):
            if staged_source is not None:
                current = staged_source
            elif job.source is not None:
                current = scratch.track(await self.stager.stage(job.source.url, job.id, "source"))
            else:
                raise ConfigError("Job has no source video")
        if staged_source is not None and current is not staged_source:
            scratch.release(staged_source)

        ctx = StepContext(
            scratch=scratch,
            total=total,
            results=results,
            on_label=lambda label: self._set_label(job.id, label),
        )
        if resume and job.pending_request is not None and cursor < total:
            if isinstance(steps[cursor], GenerateStep):
                ctx.resume_handle = job.pending_request

        for i in range(cursor, total):
            step = steps[i]
            label = step_label(step)
            await self._set_label(job.id, f"Step {i + 1}/{total}: {label}")

            step_start = time.monotonic()
            output = scratch.track(await self.processor.process(step, current, job, i, ctx))
            ctx.resume_handle = None

            url = await self.stager.publish(output, f"template-{job.id}-step-{i + 1}")
            ctx.results.append(StepResult(step_id=step.id, type=step.type, label=label, output_url=url))
            job = await self.store.update_job(job.id, JobUpdate(
                current_step=i + 1,
                label=f"Step {i + 1}/{total}: {label} - done",
                step_results=ctx.results,
                pending_request=None,
            ))
            logger.info(
                f"Job {job.id}: step {i + 1}/{total} ({label}) completed in "
                f"{time.monotonic() - step_start:.2f}s"
            )

            # Release the previous artifact unless a later attach-clip step uses it
            if current is not None and not _referenced_later(current_owner, steps[i + 1:]):
                scratch.release(current)
                ctx.produced.pop(current_owner, None)
            ctx.produced[step.id] = output
            current, current_owner = output, step.id

        if ctx.results:
            output_url = ctx.results[-1].output_url
        else:
            output_url = await self.stager.publish(current, f"template-{job.id}-output")

        job = await self.store.update_job(job.id, JobUpdate(
            status=JOB_COMPLETED,
            output_url=output_url,
            label="Done!",
            completed_at=utcnow(),
            pending_request=None,
        ))
        self._notify("Done!")
        return job

    async def _stabilize_source(self, job: JobRecord, scratch: ScratchScope) -> Optional[Path]:
        """Resolve + publish a social source once; returns the staged local copy."""
        if job.source is None or job.source.kind != "social":
            return None

        await self._set_label(job.id, "Resolving source video...")
        play_url = await self.resolver.resolve(job.source.url)
        staged = scratch.track(await self.stager.stage(play_url, job.id, "source"))
        durable_url = await self.stager.publish(staged, f"source-{job.id}")
        await self.store.update_job(job.id, JobUpdate(
            source=SourceDescriptor(kind="upload", url=durable_url),
        ))
        logger.info(f"Job {job.id}: source {job.source.url} staged as {durable_url}")
        return staged

    async def _set_label(self, job_id: uuid.UUID, label: str) -> None:
        """Best-effort progress text; failures are logged and dropped."""
        self._notify(label)
        try:
            await self.store.update_job(job_id, JobUpdate(label=label))
        except Exception as e:
            logger.warning(f"Job {job_id}: could not persist label {label!r}: {e}")

    def _notify(self, label: Optional[str]) -> None:
        if self.progress_callback and label:
            try:
                self.progress_callback(label)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    async def _recompute_batch(self, batch_id: uuid.UUID) -> None:
        try:
            await self.store.recompute_batch_progress(batch_id)
        except Exception as e:
            logger.error(f"Batch {batch_id}: progress recomputation failed: {e}")
