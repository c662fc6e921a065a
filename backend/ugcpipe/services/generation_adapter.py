"""External generation adapter for the pipeline.

Provides the submit / await / fetch interface the step processor uses,
over the fal queue API:

    handle = await adapter.submit(endpoint, payload)   # returns immediately
    ... caller persists handle ...
    await adapter.await_completion(handle)             # polls until terminal
    video_url = await adapter.fetch_result(handle)

Resumption after a crash only needs the persisted handle: re-polling a
request id is safe, so await_completion/fetch_result can be called again
without a second submit.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ugcpipe.config import settings
from ugcpipe.errors import GenerationError
from ugcpipe.schemas.pipeline import RequestHandle
from ugcpipe.services.fal_client import FalQueueClient, get_fal_client

logger = logging.getLogger(__name__)

# Status normalization sets
_COMPLETED_STATUSES = frozenset({"COMPLETED", "OK", "SUCCESS"})
_RUNNING_STATUSES = frozenset({"IN_QUEUE", "IN_PROGRESS", "QUEUED", "RUNNING"})

STATUS_COMPLETED = "completed"
STATUS_RUNNING = "running"
STATUS_FAILED = "failed"


def normalize_status(raw: dict) -> tuple[str, Optional[str]]:
    """Map a raw queue status document to (status, error_message)."""
    raw_status = str(raw.get("status", "")).upper()
    error = raw.get("error")
    if raw_status in _COMPLETED_STATUSES:
        if error:
            return STATUS_FAILED, str(error)
        return STATUS_COMPLETED, None
    if raw_status in _RUNNING_STATUSES:
        return STATUS_RUNNING, None
    return STATUS_FAILED, str(error or f"provider status {raw_status or 'unknown'}")


def extract_video_url(result: dict) -> Optional[str]:
    """``video.url`` from a result payload, nested under ``data`` or not."""
    for container in (result.get("data"), result):
        if isinstance(container, dict):
            video = container.get("video")
            if isinstance(video, dict) and video.get("url"):
                return video["url"]
    return None


class GenerationAdapter:
    """Pipeline-facing adapter for asynchronous video generation."""

    def __init__(
        self,
        client: Optional[FalQueueClient] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        webhook_url: Optional[str] = None,
    ):
        self._client = client
        self.poll_interval = poll_interval if poll_interval is not None else settings.generation.poll_interval
        self.max_polls = max_polls or settings.generation.max_polls
        if webhook_url is None and settings.providers.app_url:
            webhook_url = f"{settings.providers.app_url.rstrip('/')}/api/fal-webhook"
        self.webhook_url = webhook_url

    @property
    def client(self) -> FalQueueClient:
        if self._client is None:
            self._client = get_fal_client()
        return self._client

    async def submit(self, endpoint: str, payload: dict) -> RequestHandle:
        request_id = await self.client.submit(endpoint, payload, webhook_url=self.webhook_url)
        return RequestHandle(endpoint=endpoint, request_id=request_id)

    async def poll(self, handle: RequestHandle) -> tuple[str, Optional[str]]:
        """Single status check, normalized to completed / running / failed."""
        raw = await self.client.get_status(handle.endpoint, handle.request_id)
        return normalize_status(raw)

    async def await_completion(
        self,
        handle: RequestHandle,
        on_status: Optional[Callable[[str], Awaitable[None]]] = None,
        heartbeat: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        """Poll until the request is terminal.

        ``on_status`` receives each new raw provider status. ``heartbeat``
        runs after every non-terminal poll, changed status or not, so the
        caller can prove the worker is alive while the provider is silent.
        Both are best-effort; their failures are logged, not raised.

        Raises:
            GenerationError: provider reported failure or the poll budget ran out.
        """
        last_raw = None
        for poll_num in range(1, self.max_polls + 1):
            raw = await self.client.get_status(handle.endpoint, handle.request_id)
            status, error = normalize_status(raw)
            raw_status = raw.get("status")

            if raw_status != last_raw:
                last_raw = raw_status
                logger.info(
                    "Request %s on %s: %s (poll %d)",
                    handle.request_id, handle.endpoint, raw_status, poll_num,
                )
                if on_status is not None:
                    try:
                        await on_status(str(raw_status))
                    except Exception as e:
                        logger.warning("Status callback failed for %s: %s", handle.request_id, e)

            if status == STATUS_COMPLETED:
                return
            if status == STATUS_FAILED:
                raise GenerationError(f"Generation failed on {handle.endpoint}: {error}")

            if heartbeat is not None:
                try:
                    await heartbeat()
                except Exception as e:
                    logger.warning("Heartbeat failed for %s: %s", handle.request_id, e)
            await asyncio.sleep(self.poll_interval)

        raise GenerationError(
            f"Generation request {handle.request_id} did not complete after "
            f"{self.max_polls} polls"
        )

    async def fetch_result(self, handle: RequestHandle) -> str:
        """Return the produced video URL.

        Raises:
            GenerationError: the result carries no video URL.
        """
        result = await self.client.get_result(handle.endpoint, handle.request_id)
        url = extract_video_url(result)
        if not url:
            logger.warning(
                "No video in result for %s; keys=%s", handle.request_id, list(result),
            )
            raise GenerationError(f"No video URL in result from {handle.endpoint}")
        return url
