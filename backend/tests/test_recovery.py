import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update as sa_update

from ugcpipe.db.models import Job, utcnow
from ugcpipe.orchestrator.recovery import (
    ACTION_ERROR,
    ACTION_FAILED_NO_HANDLE,
    ACTION_FAILED_PROVIDER,
    ACTION_RESUMED,
    NO_HANDLE_ERROR,
    find_stuck_jobs,
    is_stuck,
    recover_stuck_jobs,
)
from ugcpipe.orchestrator.state import BATCH_FAILED, JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING
from ugcpipe.pipeline.runner import JobRunner
from ugcpipe.pipeline.steps import StepProcessor
from ugcpipe.schemas.pipeline import (
    GenerateConfig,
    GenerateStep,
    JobSpec,
    JobUpdate,
    RequestHandle,
    SourceDescriptor,
)
from ugcpipe.services.fal_client import FalQueueClient
from ugcpipe.services.generation_adapter import GenerationAdapter

HANDLE = RequestHandle(endpoint="fal-ai/kling-video/v2.6/standard/motion-control", request_id="req-9")


async def _age(store, job_id, minutes):
    async with store._session_factory() as session:
        await session.execute(
            sa_update(Job).where(Job.id == job_id).values(updated_at=utcnow() - timedelta(minutes=minutes))
        )
        await session.commit()


async def _stuck_job(store, pending_request=None, minutes=30, batch_id=None):
    spec = JobSpec(
        pipeline=[GenerateStep(id="g1", config=GenerateConfig(image_url="https://img/face.png"))],
        source=SourceDescriptor(kind="upload", url="https://cdn.example/in.mp4"),
    )
    job = await store.create_job(spec)
    await store.update_job(job.id, JobUpdate(
        status=JOB_PROCESSING,
        pending_request=pending_request,
        batch_id=batch_id,
    ))
    await _age(store, job.id, minutes)
    return job


@pytest.mark.asyncio
async def test_find_stuck_jobs_ignores_recent_progress(store):
    stale = await _stuck_job(store, minutes=30)
    await _stuck_job(store, minutes=2)

    stuck = await find_stuck_jobs(store, threshold_minutes=10)
    assert [j.id for j in stuck] == [stale.id]


@pytest.mark.asyncio
async def test_stuck_job_without_handle_is_failed(store, runner, adapter):
    job = await _stuck_job(store)

    [result] = await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert result.action == ACTION_FAILED_NO_HANDLE
    stored = await store.get_job(job.id)
    assert stored.status == JOB_FAILED
    assert stored.error == NO_HANDLE_ERROR
    assert adapter.polled == []


@pytest.mark.asyncio
async def test_provider_failure_fails_job(store, runner, adapter):
    adapter.poll_result = ("failed", "content policy violation")
    job = await _stuck_job(store, pending_request=HANDLE)

    [result] = await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert result.action == ACTION_FAILED_PROVIDER
    stored = await store.get_job(job.id)
    assert stored.status == JOB_FAILED
    assert stored.error == "Generation failed: content policy violation"
    assert adapter.submitted == []


@pytest.mark.asyncio
async def test_running_request_is_resumed_without_resubmit(store, runner, adapter, scratch_files):
    job = await _stuck_job(store, pending_request=HANDLE)

    [result] = await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert result.action == ACTION_RESUMED
    assert result.status == JOB_COMPLETED
    assert adapter.polled == [HANDLE]
    assert adapter.awaited == [HANDLE]
    assert adapter.submitted == []

    stored = await store.get_job(job.id)
    assert stored.status == JOB_COMPLETED
    assert stored.pending_request is None
    assert len(stored.step_results) == 1
    assert scratch_files() == []


@pytest.mark.asyncio
async def test_failed_recovery_updates_batch(store, runner, adapter):
    batch, _ = await store.create_batch("b", [], [])
    await _stuck_job(store, batch_id=batch.id)

    await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert (await store.get_batch(batch.id)).status == BATCH_FAILED


@pytest.mark.asyncio
async def test_one_broken_job_does_not_stop_the_sweep(store, runner, adapter):
    first = await _stuck_job(store, pending_request=HANDLE, minutes=40)
    second = await _stuck_job(store, minutes=30)

    async def broken_poll(handle):
        raise RuntimeError("provider unreachable")

    adapter.poll = broken_poll

    results = await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert [(r.job_id, r.action) for r in results] == [
        (first.id, ACTION_ERROR),
        (second.id, ACTION_FAILED_NO_HANDLE),
    ]
    assert (await store.get_job(first.id)).status == JOB_PROCESSING
    assert (await store.get_job(second.id)).status == JOB_FAILED


@pytest.mark.asyncio
async def test_nothing_stuck(store, runner, adapter):
    assert await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10) == []


@pytest.mark.asyncio
async def test_stuck_jobs_recover_concurrently(store, runner, adapter):
    other = RequestHandle(endpoint=HANDLE.endpoint, request_id="req-10")
    first = await _stuck_job(store, pending_request=HANDLE, minutes=40)
    second = await _stuck_job(store, pending_request=other, minutes=30)

    waiting = []
    both_waiting = asyncio.Event()

    async def hold_until_both_waiting(handle):
        waiting.append(handle.request_id)
        if len(waiting) == 2:
            both_waiting.set()
        await asyncio.wait_for(both_waiting.wait(), timeout=5)

    adapter.on_await = hold_until_both_waiting

    results = await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert sorted(waiting) == ["req-10", "req-9"]
    assert [(r.job_id, r.action, r.status) for r in results] == [
        (first.id, ACTION_RESUMED, JOB_COMPLETED),
        (second.id, ACTION_RESUMED, JOB_COMPLETED),
    ]
    assert adapter.submitted == []


@pytest.mark.asyncio
async def test_is_stuck(store):
    stale = await _stuck_job(store, minutes=30)
    fresh = await _stuck_job(store, minutes=1)
    assert await is_stuck(store, stale.id, threshold_minutes=10)
    assert not await is_stuck(store, fresh.id, threshold_minutes=10)


@pytest.mark.asyncio
async def test_live_job_is_not_swept_while_provider_is_silent(store, stager, resolver, transcoder, scratch_files):
    """A worker polling a long-running request stays fresh between status changes."""
    job = await store.create_job(JobSpec(pipeline=[
        GenerateStep(id="g1", config=GenerateConfig(mode="subtle-animation", image_url="https://img/face.png")),
    ]))
    sweeps = []
    status_polls = 0
    submits = 0

    async def fal_queue(request: httpx.Request) -> httpx.Response:
        nonlocal status_polls, submits
        if request.method == "POST":
            submits += 1
            return httpx.Response(200, json={"request_id": "req-live"})
        if request.url.path.endswith("/status"):
            status_polls += 1
            if status_polls == 2:
                # Same status as last poll: nothing but liveness to record
                await _age(store, job.id, 30)
            if status_polls < 3:
                return httpx.Response(200, json={"status": "IN_PROGRESS"})
            sweeps.append(await recover_stuck_jobs(store, runner, generation, threshold_minutes=10))
            return httpx.Response(200, json={"status": "COMPLETED"})
        return httpx.Response(200, json={"video": {"url": "https://cdn.example/generated.mp4"}})

    fal = FalQueueClient(api_key="fal-key", queue_url="https://queue.fal.run")
    fal._client = httpx.AsyncClient(base_url=fal.queue_url, transport=httpx.MockTransport(fal_queue))
    generation = GenerationAdapter(client=fal, poll_interval=0, max_polls=5, webhook_url=None)
    runner = JobRunner(store, StepProcessor(store, stager, generation, resolver, transcoder), stager, resolver)

    try:
        result = await runner.run(job.id)
    finally:
        await fal.close()

    assert sweeps == [[]]
    assert submits == 1
    assert status_polls == 3
    assert result.status == JOB_COMPLETED
    assert scratch_files() == []


@pytest.mark.asyncio
async def test_sweep_logs_each_outcome(store, runner, adapter, caplog):
    job = await _stuck_job(store)

    with caplog.at_level("INFO", logger="ugcpipe.orchestrator.recovery"):
        await recover_stuck_jobs(store, runner, adapter, threshold_minutes=10)

    assert "Found 1 stuck job(s)" in caplog.text
    assert f"Job {job.id} stuck with no request handle; marking failed" in caplog.text
