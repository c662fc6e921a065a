"""HTTP surface, with background work recorded instead of executed."""

import uuid
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy import update as sa_update

from ugcpipe.api import routes
from ugcpipe.db.models import Job, utcnow
from ugcpipe.orchestrator.state import JOB_PROCESSING
from ugcpipe.schemas.pipeline import JobUpdate

TIKTOK_URL = "https://www.tiktok.com/@creator/video/7300000000000000000"

OVERLAY = {"type": "overlay-text", "id": "t1", "config": {"text": "follow for more"}}
BATCH_STEP = {
    "type": "batch-generate",
    "id": "gen",
    "config": {"images": [{"image_url": "https://img/a.png"}, {"image_url": "https://img/b.png"}]},
}


@pytest.fixture
def scheduled(monkeypatch):
    """Replace background entry points; collect what would have run."""
    calls = []

    async def record_job(job_id):
        calls.append(("job", job_id))

    async def record_resume(job_id):
        calls.append(("resume", job_id))

    async def record_batch(batch_id):
        calls.append(("batch", batch_id))

    monkeypatch.setattr(routes, "run_job_background", record_job)
    monkeypatch.setattr(routes, "resume_job_background", record_resume)
    monkeypatch.setattr(routes, "run_batch_background", record_batch)
    return calls


@pytest_asyncio.fixture
async def client(store, monkeypatch, scheduled):
    monkeypatch.setattr(routes, "_store", lambda: store)
    app = FastAPI()
    app.include_router(routes.router)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_job_queues_run(client, store, scheduled):
    response = await client.post("/api/jobs", json={
        "pipeline": [OVERLAY], "source_url": TIKTOK_URL, "name": "promo",
    })
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    assert body["status_url"] == f"/api/jobs/{body['id']}"

    job = await store.get_job(uuid.UUID(body["id"]))
    assert job.source.kind == "social"
    assert job.total_steps == 1
    assert scheduled == [("job", job.id)]


@pytest.mark.asyncio
async def test_create_job_rejects_batch_step(client, scheduled):
    response = await client.post("/api/jobs", json={"pipeline": [BATCH_STEP], "source_url": TIKTOK_URL})
    assert response.status_code == 422
    assert scheduled == []


@pytest.mark.asyncio
async def test_create_job_without_steps_or_source(client):
    response = await client.post("/api/jobs", json={"pipeline": []})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_step_type_is_rejected(client):
    response = await client.post("/api/jobs", json={
        "pipeline": [{"type": "compose", "id": "c", "config": {}}], "source_url": TIKTOK_URL,
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_missing_job(client):
    response = await client.get(f"/api/jobs/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_resume_requires_processing(client, scheduled):
    created = (await client.post("/api/jobs", json={"pipeline": [OVERLAY], "source_url": TIKTOK_URL})).json()
    response = await client.post(f"/api/jobs/{created['id']}/resume")
    assert response.status_code == 409
    assert [kind for kind, _ in scheduled] == ["job"]


@pytest.mark.asyncio
async def test_resume_refuses_job_with_live_worker(client, store, scheduled):
    created = (await client.post("/api/jobs", json={"pipeline": [OVERLAY], "source_url": TIKTOK_URL})).json()
    job_id = uuid.UUID(created["id"])
    await store.update_job(job_id, JobUpdate(status=JOB_PROCESSING))

    response = await client.post(f"/api/jobs/{job_id}/resume")
    assert response.status_code == 409
    assert response.json()["detail"] == "Job is still making progress"
    assert ("resume", job_id) not in scheduled


@pytest.mark.asyncio
async def test_resume_idle_processing_job(client, store, scheduled):
    created = (await client.post("/api/jobs", json={"pipeline": [OVERLAY], "source_url": TIKTOK_URL})).json()
    job_id = uuid.UUID(created["id"])
    await store.update_job(job_id, JobUpdate(status=JOB_PROCESSING))
    async with store._session_factory() as session:
        await session.execute(
            sa_update(Job).where(Job.id == job_id).values(updated_at=utcnow() - timedelta(minutes=30))
        )
        await session.commit()

    response = await client.post(f"/api/jobs/{job_id}/resume")
    assert response.status_code == 202
    assert scheduled[-1] == ("resume", job_id)


@pytest.mark.asyncio
async def test_create_batch_queues_children(client, store, scheduled):
    response = await client.post("/api/pipeline-batches", json={
        "name": "promo", "pipeline": [BATCH_STEP, OVERLAY], "source_url": TIKTOK_URL,
    })
    assert response.status_code == 202
    body = response.json()
    assert len(body["job_ids"]) == 2

    detail = (await client.get(body["status_url"])).json()
    assert detail["batch"]["total_jobs"] == 2
    assert {j["id"] for j in detail["jobs"]} == set(body["job_ids"])
    assert scheduled == [("batch", uuid.UUID(body["id"]))]


@pytest.mark.asyncio
async def test_create_batch_without_batch_step(client):
    response = await client.post("/api/pipeline-batches", json={"name": "x", "pipeline": [OVERLAY]})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_delete_batch(client):
    body = (await client.post("/api/pipeline-batches", json={
        "name": "promo", "pipeline": [BATCH_STEP], "source_url": TIKTOK_URL,
    })).json()

    response = await client.delete(f"/api/pipeline-batches/{body['id']}")
    assert response.json() == {"deleted": True, "id": body["id"]}
    assert (await client.delete(f"/api/pipeline-batches/{body['id']}")).status_code == 404
    assert (await client.get(f"/api/jobs/{body['job_ids'][0]}")).status_code == 200


@pytest.mark.asyncio
async def test_webhook_is_acknowledged(client):
    response = await client.post("/api/fal-webhook", json={"request_id": "req-1", "status": "OK"})
    assert response.json() == {"received": True}
