"""Generation adapter over the fal queue client, with HTTP mocked."""

import json

import httpx
import pytest

from ugcpipe.errors import GenerationError
from ugcpipe.schemas.pipeline import RequestHandle
from ugcpipe.services.fal_client import FalQueueClient, app_id
from ugcpipe.services.generation_adapter import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    GenerationAdapter,
    extract_video_url,
    normalize_status,
)

ENDPOINT = "fal-ai/veo3.1/image-to-video"


def _fal_client(handler) -> FalQueueClient:
    client = FalQueueClient(api_key="fal-key", queue_url="https://queue.fal.run")
    client._client = httpx.AsyncClient(
        base_url=client.queue_url,
        headers={"Authorization": "Key fal-key"},
        transport=httpx.MockTransport(handler),
    )
    return client


class _QueueServer:
    """Replays a status sequence for one request id."""

    def __init__(self, statuses, result=None):
        self.statuses = list(statuses)
        self.result = result or {"video": {"url": "https://fal.media/out.mp4"}}
        self.requests: list[httpx.Request] = []
        self.status_polls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST":
            return httpx.Response(200, json={"request_id": "req-42"})
        if path.endswith("/status"):
            status = self.statuses[min(self.status_polls, len(self.statuses) - 1)]
            self.status_polls += 1
            return httpx.Response(200, json=status)
        return httpx.Response(200, json=self.result)


def test_app_id_uses_first_two_segments():
    assert app_id("fal-ai/kling-video/v2.6/standard/motion-control") == "fal-ai/kling-video"
    assert app_id(ENDPOINT) == "fal-ai/veo3.1"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"status": "IN_QUEUE"}, (STATUS_RUNNING, None)),
        ({"status": "IN_PROGRESS"}, (STATUS_RUNNING, None)),
        ({"status": "COMPLETED"}, (STATUS_COMPLETED, None)),
        ({"status": "COMPLETED", "error": "NSFW"}, (STATUS_FAILED, "NSFW")),
        ({"status": "FAILED", "error": "bad input"}, (STATUS_FAILED, "bad input")),
        ({}, (STATUS_FAILED, "provider status unknown")),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_extract_video_url():
    assert extract_video_url({"video": {"url": "https://a/1.mp4"}}) == "https://a/1.mp4"
    assert extract_video_url({"data": {"video": {"url": "https://a/2.mp4"}}}) == "https://a/2.mp4"
    assert extract_video_url({"images": []}) is None


@pytest.mark.asyncio
async def test_submit_await_fetch():
    server = _QueueServer([
        {"status": "IN_QUEUE"},
        {"status": "IN_PROGRESS"},
        {"status": "IN_PROGRESS"},
        {"status": "COMPLETED"},
    ])
    adapter = GenerationAdapter(client=_fal_client(server), poll_interval=0, max_polls=10, webhook_url=None)
    seen = []

    async def on_status(status):
        seen.append(status)

    handle = await adapter.submit(ENDPOINT, {"image_url": "https://img/a.png", "prompt": "p"})
    assert handle == RequestHandle(endpoint=ENDPOINT, request_id="req-42")

    await adapter.await_completion(handle, on_status=on_status)
    assert await adapter.fetch_result(handle) == "https://fal.media/out.mp4"

    post = server.requests[0]
    assert post.url.path == f"/{ENDPOINT}"
    assert json.loads(post.content)["image_url"] == "https://img/a.png"
    assert post.headers["Authorization"] == "Key fal-key"
    assert server.requests[1].url.path == "/fal-ai/veo3.1/requests/req-42/status"
    assert server.requests[-1].url.path == "/fal-ai/veo3.1/requests/req-42"
    # One callback per status change
    assert seen == ["IN_QUEUE", "IN_PROGRESS", "COMPLETED"]


@pytest.mark.asyncio
async def test_webhook_url_passed_on_submit():
    server = _QueueServer([{"status": "COMPLETED"}])
    adapter = GenerationAdapter(client=_fal_client(server), webhook_url="https://app.example/api/fal-webhook")
    await adapter.submit(ENDPOINT, {})
    assert server.requests[0].url.params["fal_webhook"] == "https://app.example/api/fal-webhook"


@pytest.mark.asyncio
async def test_provider_failure_raises():
    server = _QueueServer([{"status": "IN_PROGRESS"}, {"status": "FAILED", "error": "content policy"}])
    adapter = GenerationAdapter(client=_fal_client(server), poll_interval=0, max_polls=10)
    with pytest.raises(GenerationError, match="content policy"):
        await adapter.await_completion(RequestHandle(endpoint=ENDPOINT, request_id="req-42"))


@pytest.mark.asyncio
async def test_poll_budget_exhausted_raises():
    server = _QueueServer([{"status": "IN_PROGRESS"}])
    adapter = GenerationAdapter(client=_fal_client(server), poll_interval=0, max_polls=3)
    with pytest.raises(GenerationError, match="did not complete after 3 polls"):
        await adapter.await_completion(RequestHandle(endpoint=ENDPOINT, request_id="req-42"))
    assert server.status_polls == 3


@pytest.mark.asyncio
async def test_status_callback_failure_is_not_fatal():
    server = _QueueServer([{"status": "COMPLETED"}])
    adapter = GenerationAdapter(client=_fal_client(server), poll_interval=0, max_polls=3)

    async def broken(status):
        raise RuntimeError("db down")

    await adapter.await_completion(RequestHandle(endpoint=ENDPOINT, request_id="req-42"), on_status=broken)


@pytest.mark.asyncio
async def test_heartbeat_on_every_running_poll():
    server = _QueueServer([{"status": "IN_PROGRESS"}] * 6 + [{"status": "COMPLETED"}])
    adapter = GenerationAdapter(client=_fal_client(server), poll_interval=0, max_polls=10)
    beats = []
    statuses = []

    async def heartbeat():
        beats.append(server.status_polls)

    async def on_status(status):
        statuses.append(status)

    await adapter.await_completion(
        RequestHandle(endpoint=ENDPOINT, request_id="req-42"), on_status=on_status, heartbeat=heartbeat,
    )

    # Status only reported on change, liveness on each of the six running polls
    assert statuses == ["IN_PROGRESS", "COMPLETED"]
    assert beats == [1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_heartbeat_failure_is_not_fatal():
    server = _QueueServer([{"status": "IN_PROGRESS"}, {"status": "COMPLETED"}])
    adapter = GenerationAdapter(client=_fal_client(server), poll_interval=0, max_polls=3)

    async def broken():
        raise RuntimeError("db locked")

    await adapter.await_completion(RequestHandle(endpoint=ENDPOINT, request_id="req-42"), heartbeat=broken)
    assert server.status_polls == 2


@pytest.mark.asyncio
async def test_result_without_video_raises():
    server = _QueueServer([{"status": "COMPLETED"}], result={"images": []})
    adapter = GenerationAdapter(client=_fal_client(server))
    with pytest.raises(GenerationError, match="No video URL"):
        await adapter.fetch_result(RequestHandle(endpoint=ENDPOINT, request_id="req-42"))


@pytest.mark.asyncio
async def test_poll_is_single_status_check():
    server = _QueueServer([{"status": "IN_PROGRESS"}])
    adapter = GenerationAdapter(client=_fal_client(server))
    assert await adapter.poll(RequestHandle(endpoint=ENDPOINT, request_id="req-42")) == (STATUS_RUNNING, None)
    assert server.status_polls == 1
