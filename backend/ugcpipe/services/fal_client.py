"""fal.ai queue REST API client.

Provides:
- submit: enqueue a request on a model endpoint, returns the request id
- get_status / get_result: read-side calls keyed by request id

Status and result reads are idempotent and retried on 429/5xx/transport
errors. Submits are not retried here: a blind resubmit can bill twice.

Usage:
    from ugcpipe.services.fal_client import get_fal_client

    client = get_fal_client()
    request_id = await client.submit("fal-ai/veo3.1/image-to-video", {...})
    status = await client.get_status("fal-ai/veo3.1/image-to-video", request_id)
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ugcpipe.config import settings

logger = logging.getLogger(__name__)


def app_id(endpoint: str) -> str:
    """Queue app id: the first two path segments of the endpoint.

    >>> app_id("fal-ai/kling-video/v2.6/standard/motion-control")
    'fal-ai/kling-video'
    """
    parts = endpoint.strip("/").split("/")
    return "/".join(parts[:2])


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


_read_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    retry=retry_if_exception(_is_transient),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class FalQueueClient:
    """Async client for queue.fal.run."""

    def __init__(self, api_key: str, queue_url: str = "https://queue.fal.run"):
        self.api_key = api_key
        self.queue_url = queue_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.queue_url,
                headers={"Authorization": f"Key {self.api_key}"},
                follow_redirects=True,
                timeout=httpx.Timeout(60.0, connect=15.0),
            )
        return self._client

    async def submit(self, endpoint: str, payload: dict, webhook_url: Optional[str] = None) -> str:
        """Enqueue ``payload`` on ``endpoint``; return the request id."""
        params = {"fal_webhook": webhook_url} if webhook_url else None
        logger.info("POST %s/%s (keys=%s)", self.queue_url, endpoint, sorted(payload))
        response = await self.client.post(f"/{endpoint}", json=payload, params=params)
        logger.info("  submit response: HTTP %d", response.status_code)
        response.raise_for_status()
        request_id = response.json()["request_id"]
        logger.info("  request_id: %s", request_id)
        return request_id

    @_read_retry
    async def get_status(self, endpoint: str, request_id: str) -> dict:
        """Raw status document, e.g. ``{"status": "IN_PROGRESS", ...}``."""
        response = await self.client.get(f"/{app_id(endpoint)}/requests/{request_id}/status")
        logger.debug(
            "GET %s/requests/%s/status - HTTP %d",
            app_id(endpoint), request_id, response.status_code,
        )
        response.raise_for_status()
        return response.json()

    @_read_retry
    async def get_result(self, endpoint: str, request_id: str) -> dict:
        """Result payload of a completed request."""
        response = await self.client.get(f"/{app_id(endpoint)}/requests/{request_id}")
        logger.info(
            "GET %s/requests/%s - HTTP %d",
            app_id(endpoint), request_id, response.status_code,
        )
        response.raise_for_status()
        return response.json()

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Module-level lazy singleton
# ---------------------------------------------------------------------------

_fal_client: Optional[FalQueueClient] = None


def get_fal_client() -> FalQueueClient:
    """Get or create the shared FalQueueClient from settings."""
    global _fal_client
    if _fal_client is None:
        if not settings.providers.fal_key:
            raise ValueError(
                "fal.ai API key not configured. Set UGCPIPE_PROVIDERS__FAL_KEY "
                "in .env or providers.fal_key in config.yaml."
            )
        _fal_client = FalQueueClient(settings.providers.fal_key, settings.providers.fal_queue_url)
    return _fal_client


async def close_fal_client() -> None:
    """Close and drop the shared client (FastAPI lifespan shutdown)."""
    global _fal_client
    if _fal_client is not None:
        await _fal_client.close()
        _fal_client = None
