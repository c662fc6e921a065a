"""Stuck-job detection and handle-based recovery.

A job is stuck when it is still ``processing`` but has not recorded progress
for longer than the threshold, typically because the worker died mid-step.

Recovery per stuck job:
- no stored request handle: the interrupted step cannot be re-attached,
  so the job is failed
- handle present, provider reports failure: failed with the provider message
- handle present, provider still running or done: the runner resumes at the
  persisted cursor and waits on that same request (no resubmit)

Stuck jobs are recovered concurrently and independently; one job's error
never stops the others.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from ugcpipe.config import settings
from ugcpipe.db.repository import PipelineStore
from ugcpipe.orchestrator.state import JOB_FAILED
from ugcpipe.pipeline.runner import JobRunner
from ugcpipe.schemas.pipeline import JobRecord, JobUpdate
from ugcpipe.services.generation_adapter import STATUS_FAILED, GenerationAdapter

logger = logging.getLogger(__name__)

NO_HANDLE_ERROR = "Job timed out and no request handle was stored to resume from"

ACTION_FAILED_NO_HANDLE = "failed_no_handle"
ACTION_FAILED_PROVIDER = "failed_provider"
ACTION_RESUMED = "resumed"
ACTION_ERROR = "error"


@dataclass
class RecoveryResult:
    job_id: uuid.UUID
    action: str
    status: Optional[str] = None
    detail: Optional[str] = None


async def find_stuck_jobs(store: PipelineStore, threshold_minutes: Optional[int] = None) -> list[JobRecord]:
    """Processing jobs with no progress for ``threshold_minutes`` (detection only)."""
    if threshold_minutes is None:
        threshold_minutes = settings.recovery.stuck_threshold_minutes
    return await store.list_stuck_jobs(threshold_minutes)


async def is_stuck(store: PipelineStore, job_id: uuid.UUID, threshold_minutes: Optional[int] = None) -> bool:
    """True when the job is processing and its worker has gone quiet.

    A job whose worker is still polling keeps refreshing ``updated_at`` and
    is never stuck, so resuming it would start a second runner.
    """
    return any(j.id == job_id for j in await find_stuck_jobs(store, threshold_minutes))


async def _fail(store: PipelineStore, job: JobRecord, message: str) -> None:
    await store.update_job(job.id, JobUpdate(status=JOB_FAILED, error=message, label="Failed"))
    if job.batch_id is not None:
        try:
            await store.recompute_batch_progress(job.batch_id)
        except Exception as e:
            logger.error(f"Batch {job.batch_id}: progress recomputation failed: {e}")


async def recover_job(
    store: PipelineStore,
    runner: JobRunner,
    adapter: GenerationAdapter,
    job: JobRecord,
) -> RecoveryResult:
    if job.pending_request is None:
        logger.warning(f"Job {job.id} stuck with no request handle; marking failed")
        await _fail(store, job, NO_HANDLE_ERROR)
        return RecoveryResult(job.id, ACTION_FAILED_NO_HANDLE, JOB_FAILED)

    status, error = await adapter.poll(job.pending_request)
    if status == STATUS_FAILED:
        message = f"Generation failed: {error}"
        logger.warning(f"Job {job.id}: provider reports failure for {job.pending_request.request_id}: {error}")
        await _fail(store, job, message)
        return RecoveryResult(job.id, ACTION_FAILED_PROVIDER, JOB_FAILED, message)

    logger.info(
        f"Job {job.id}: request {job.pending_request.request_id} is {status}; "
        f"resuming at step {len(job.step_results) + 1}"
    )
    resumed = await runner.resume(job.id)
    return RecoveryResult(job.id, ACTION_RESUMED, resumed.status, resumed.error)


async def recover_stuck_jobs(
    store: PipelineStore,
    runner: JobRunner,
    adapter: GenerationAdapter,
    threshold_minutes: Optional[int] = None,
) -> list[RecoveryResult]:
    """Sweep stuck jobs and recover them concurrently.

    Results come back in the order the jobs were found; a job whose
    recovery raised is reported as ``ACTION_ERROR`` and left untouched.
    """
    stuck = await find_stuck_jobs(store, threshold_minutes)
    if not stuck:
        return []
    logger.info(f"Found {len(stuck)} stuck job(s)")

    outcomes = await asyncio.gather(
        *(recover_job(store, runner, adapter, job) for job in stuck),
        return_exceptions=True,
    )

    results = []
    for job, outcome in zip(stuck, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(f"Recovery of job {job.id} failed: {type(outcome).__name__}: {outcome}")
            results.append(RecoveryResult(job.id, ACTION_ERROR, job.status, str(outcome)))
        else:
            results.append(outcome)
    return results
