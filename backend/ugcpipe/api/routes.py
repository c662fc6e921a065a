"""API route handlers and Pydantic request/response schemas."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import BaseModel

from ugcpipe import __version__
from ugcpipe.db.repository import PipelineStore
from ugcpipe.errors import ConfigError
from ugcpipe.orchestrator import pipeline as engine_ops
from ugcpipe.orchestrator.recovery import find_stuck_jobs, is_stuck
from ugcpipe.orchestrator.state import JOB_PROCESSING
from ugcpipe.schemas.pipeline import (
    BatchGenerateStep,
    BatchImage,
    BatchRecord,
    JobRecord,
    JobSpec,
    PipelineStep,
)
from ugcpipe.pipeline.batch import create_pipeline_batch
from ugcpipe.services.resolver import describe_source

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _store() -> PipelineStore:
    return PipelineStore()


# ============================================================================
# Request / Response Schemas
# ============================================================================

class CreateJobRequest(BaseModel):
    """Request schema for POST /api/jobs."""
    pipeline: list[PipelineStep]
    source_url: Optional[str] = None
    name: Optional[str] = None


class CreateBatchRequest(BaseModel):
    """Request schema for POST /api/pipeline-batches."""
    name: str
    pipeline: list[PipelineStep]
    source_url: Optional[str] = None
    images: Optional[list[BatchImage]] = None


class AcceptedResponse(BaseModel):
    id: str
    status: str
    status_url: str


class BatchCreatedResponse(AcceptedResponse):
    job_ids: list[str]


class BatchDetail(BaseModel):
    batch: BatchRecord
    jobs: list[JobRecord]


class RecoveryStartedResponse(BaseModel):
    stuck_job_ids: list[str]
    threshold_minutes: Optional[int]


# ============================================================================
# Background Task Wrappers
# ============================================================================

async def run_job_background(job_id: uuid.UUID):
    """Run one job in the background. Failures are already persisted by the runner."""
    try:
        await engine_ops.run_job(job_id)
    except Exception as e:
        logger.error(f"Background job failed for {job_id}: {type(e).__name__}: {str(e)}")


async def resume_job_background(job_id: uuid.UUID):
    try:
        await engine_ops.resume_job(job_id)
    except Exception as e:
        logger.error(f"Background resume failed for {job_id}: {type(e).__name__}: {str(e)}")


async def run_batch_background(batch_id: uuid.UUID):
    try:
        await engine_ops.run_pipeline_batch(batch_id)
    except Exception as e:
        logger.error(f"Background batch failed for {batch_id}: {type(e).__name__}: {str(e)}")


async def recover_background(threshold_minutes: Optional[int]):
    try:
        results = await engine_ops.recover(threshold_minutes)
        logger.info(f"Recovery finished: {[(str(r.job_id), r.action) for r in results]}")
    except Exception as e:
        logger.error(f"Background recovery failed: {type(e).__name__}: {str(e)}")


# ============================================================================
# Jobs
# ============================================================================

@router.post("/jobs", status_code=202, response_model=AcceptedResponse)
async def create_job(request: CreateJobRequest, background_tasks: BackgroundTasks):
    """Create a job and start its pipeline in the background."""
    if any(isinstance(step, BatchGenerateStep) for step in request.pipeline):
        raise HTTPException(
            status_code=422,
            detail="Pipelines with a batch-generate step must be submitted to /api/pipeline-batches",
        )
    if not any(step.enabled for step in request.pipeline) and not request.source_url:
        raise HTTPException(status_code=422, detail="A pipeline with no enabled steps needs a source_url")

    source = describe_source(request.source_url) if request.source_url else None
    job = await _store().create_job(JobSpec(pipeline=request.pipeline, source=source, name=request.name))
    logger.info(f"Queued job {job.id} ({job.total_steps} steps, source={source.kind if source else 'none'})")

    background_tasks.add_task(run_job_background, job.id)
    return AcceptedResponse(id=str(job.id), status=job.status, status_url=f"/api/jobs/{job.id}")


@router.get("/jobs", response_model=list[JobRecord])
async def list_jobs(limit: int = 50, status: Optional[str] = None):
    """List jobs, newest first."""
    return await _store().list_jobs(limit=limit, status=status)


@router.get("/jobs/{job_id}", response_model=JobRecord)
async def get_job(job_id: uuid.UUID):
    job = await _store().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/resume", status_code=202, response_model=AcceptedResponse)
async def resume_job(job_id: uuid.UUID, background_tasks: BackgroundTasks):
    """Resume an interrupted job at its persisted cursor.

    Returns 409 unless the job is still ``processing`` and its worker has
    stopped reporting progress.
    """
    store = _store()
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JOB_PROCESSING:
        raise HTTPException(status_code=409, detail=f"Job cannot be resumed from status '{job.status}'")
    if not await is_stuck(store, job_id):
        raise HTTPException(status_code=409, detail="Job is still making progress")

    logger.info(f"Resuming job {job_id} at step {len(job.step_results) + 1}/{job.total_steps}")
    background_tasks.add_task(resume_job_background, job_id)
    return AcceptedResponse(id=str(job_id), status=job.status, status_url=f"/api/jobs/{job_id}")


# ============================================================================
# Pipeline batches
# ============================================================================

@router.post("/pipeline-batches", status_code=202, response_model=BatchCreatedResponse)
async def create_batch(request: CreateBatchRequest, background_tasks: BackgroundTasks):
    """Expand a batch-generate pipeline into child jobs and run them in the background."""
    source = describe_source(request.source_url) if request.source_url else None
    try:
        batch, jobs = await create_pipeline_batch(
            _store(), request.name, request.pipeline, source=source, images=request.images,
        )
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))

    background_tasks.add_task(run_batch_background, batch.id)
    return BatchCreatedResponse(
        id=str(batch.id),
        status=batch.status,
        status_url=f"/api/pipeline-batches/{batch.id}",
        job_ids=[str(j.id) for j in jobs],
    )


@router.get("/pipeline-batches", response_model=list[BatchRecord])
async def list_batches(limit: int = 50):
    return await _store().list_batches(limit=limit)


@router.get("/pipeline-batches/{batch_id}", response_model=BatchDetail)
async def get_batch(batch_id: uuid.UUID):
    """Batch with its child jobs."""
    store = _store()
    batch = await store.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return BatchDetail(batch=batch, jobs=await store.list_jobs_by_batch(batch_id))


@router.delete("/pipeline-batches/{batch_id}")
async def delete_batch(batch_id: uuid.UUID):
    """Delete a batch; its jobs are kept and detached."""
    if not await _store().delete_batch(batch_id):
        raise HTTPException(status_code=404, detail="Batch not found")
    return {"deleted": True, "id": str(batch_id)}


# ============================================================================
# Recovery
# ============================================================================

@router.get("/stuck-jobs", response_model=list[JobRecord])
async def list_stuck_jobs(threshold_minutes: Optional[int] = None):
    return await find_stuck_jobs(_store(), threshold_minutes)


@router.post("/recover-stuck-jobs", status_code=202, response_model=RecoveryStartedResponse)
async def recover_stuck(background_tasks: BackgroundTasks, threshold_minutes: Optional[int] = None):
    """Report stuck jobs and recover them in the background."""
    stuck = await find_stuck_jobs(_store(), threshold_minutes)
    if stuck:
        background_tasks.add_task(recover_background, threshold_minutes)
    return RecoveryStartedResponse(
        stuck_job_ids=[str(j.id) for j in stuck],
        threshold_minutes=threshold_minutes,
    )


@router.post("/fal-webhook")
async def fal_webhook(payload: dict):
    """Provider completion notice. Polling stays authoritative; this only logs."""
    logger.info(
        f"fal webhook: request_id={payload.get('request_id')} status={payload.get('status')}"
    )
    return {"received": True}


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
    }
