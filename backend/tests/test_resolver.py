from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from ugcpipe.errors import ResolutionError
from ugcpipe.services.rate_limiter import RateLimiter
from ugcpipe.services.resolver import (
    VideoResolver,
    describe_source,
    detect_source_kind,
    extract_instagram_url,
    extract_tiktok_url,
)

TIKTOK_URL = "https://www.tiktok.com/@creator/video/7300000000000000000"
INSTAGRAM_URL = "https://www.instagram.com/reel/Cabc123/"


class _CountingLimiter:
    def __init__(self) -> None:
        self.permits = 0

    async def acquire(self) -> None:
        self.permits += 1


def _resolver(responses: list, limiter: _CountingLimiter | None = None) -> tuple[VideoResolver, list]:
    """Resolver over a MockTransport that replays ``responses`` in order."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        item = responses[min(len(requests), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    resolver = VideoResolver(
        client=client,
        limiter=limiter or _CountingLimiter(),
        api_key="rapid-key",
        max_attempts=3,
        base_delay=0,
    )
    return resolver, requests


# ---------------------------------------------------------------------------
# URL classification and payload extraction
# ---------------------------------------------------------------------------

def test_detect_source_kind():
    assert detect_source_kind(TIKTOK_URL) == "tiktok"
    assert detect_source_kind("https://vm.tiktok.com/ZM123/") == "tiktok"
    assert detect_source_kind(INSTAGRAM_URL) == "instagram"
    assert detect_source_kind("https://www.instagram.com/p/Cxyz/") == "instagram"
    assert detect_source_kind("https://www.instagram.com/creator/") is None
    assert detect_source_kind("https://cdn.example/video.mp4") is None


def test_describe_source():
    assert describe_source(TIKTOK_URL).kind == "social"
    assert describe_source("https://cdn.example/video.mp4").kind == "upload"


def test_extract_tiktok_url_prefers_unwatermarked():
    assert extract_tiktok_url({"play": "https://a/play.mp4", "wmplay": "https://a/wm.mp4"}) == "https://a/play.mp4"
    assert extract_tiktok_url({"data": {"hdplay": "https://a/hd.mp4"}}) == "https://a/hd.mp4"
    assert extract_tiktok_url({"result": {"video_url": "https://a/r.mp4"}}) == "https://a/r.mp4"
    assert extract_tiktok_url({"play_watermark": "https://a/w.mp4"}) == "https://a/w.mp4"
    assert extract_tiktok_url({"data": {}}) is None


def test_extract_instagram_url():
    assert extract_instagram_url({"data": {"medias": [{"link": "https://i/1.mp4"}]}}) == "https://i/1.mp4"
    assert extract_instagram_url({"data": {"video_url": "https://i/2.mp4"}}) == "https://i/2.mp4"
    assert extract_instagram_url({"data": [{"url": "https://i/3.mp4"}]}) == "https://i/3.mp4"
    assert extract_instagram_url({"video_url": "https://i/4.mp4"}) == "https://i/4.mp4"
    assert extract_instagram_url({"data": {"medias": []}}) is None


# ---------------------------------------------------------------------------
# Retry classification
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_resolve_success_first_try():
    limiter = _CountingLimiter()
    resolver, requests = _resolver([httpx.Response(200, json={"play": "https://cdn.tiktok/v.mp4"})], limiter)

    assert await resolver.resolve(TIKTOK_URL) == "https://cdn.tiktok/v.mp4"
    assert resolver.attempts == 1
    assert limiter.permits == 1
    assert requests[0].url.host == "tiktok-api23.p.rapidapi.com"
    assert requests[0].url.path == "/api/download/video"
    assert requests[0].url.params["url"] == TIKTOK_URL
    assert requests[0].headers["x-rapidapi-key"] == "rapid-key"


@pytest.mark.asyncio
async def test_instagram_uses_post_dl_endpoint():
    resolver, requests = _resolver([httpx.Response(200, json={"data": {"medias": [{"link": "https://i/v.mp4"}]}})])
    assert await resolver.resolve(INSTAGRAM_URL) == "https://i/v.mp4"
    assert requests[0].url.host == "instagram-looter2.p.rapidapi.com"
    assert requests[0].url.path == "/post-dl"


@pytest.mark.asyncio
async def test_retry_on_429_then_success():
    limiter = _CountingLimiter()
    resolver, _ = _resolver([
        httpx.Response(429, json={"message": "Too many requests"}),
        httpx.Response(200, json={"play": "https://cdn.tiktok/v.mp4"}),
    ], limiter)

    assert await resolver.resolve(TIKTOK_URL) == "https://cdn.tiktok/v.mp4"
    assert resolver.attempts == 2
    assert limiter.permits == 2


@pytest.mark.asyncio
async def test_always_retryable_exhausts_three_attempts():
    limiter = _CountingLimiter()
    resolver, _ = _resolver([httpx.Response(503, text="unavailable")], limiter)

    with pytest.raises(ResolutionError) as exc_info:
        await resolver.resolve(TIKTOK_URL)
    assert exc_info.value.retryable
    assert resolver.attempts == 3
    assert limiter.permits == 3


@pytest.mark.asyncio
async def test_video_not_found_is_retryable():
    resolver, _ = _resolver([
        httpx.Response(200, json={"error": "Video not found"}),
        httpx.Response(200, json={"play": "https://cdn.tiktok/v.mp4"}),
    ])
    assert await resolver.resolve(TIKTOK_URL) == "https://cdn.tiktok/v.mp4"
    assert resolver.attempts == 2


@pytest.mark.asyncio
async def test_transport_and_parse_errors_are_retryable():
    resolver, _ = _resolver([
        httpx.ConnectError("connection refused"),
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json={"play": "https://cdn.tiktok/v.mp4"}),
    ])
    assert await resolver.resolve(TIKTOK_URL) == "https://cdn.tiktok/v.mp4"
    assert resolver.attempts == 3


@pytest.mark.asyncio
async def test_non_retryable_status_fails_after_one_attempt():
    limiter = _CountingLimiter()
    resolver, _ = _resolver([httpx.Response(403, json={"message": "forbidden"})], limiter)

    with pytest.raises(ResolutionError) as exc_info:
        await resolver.resolve(TIKTOK_URL)
    assert not exc_info.value.retryable
    assert resolver.attempts == 1
    assert limiter.permits == 1


@pytest.mark.asyncio
async def test_success_without_video_url_is_not_retried():
    resolver, _ = _resolver([httpx.Response(200, json={"data": {"title": "no video"}})])
    with pytest.raises(ResolutionError, match="No video URL"):
        await resolver.resolve(TIKTOK_URL)
    assert resolver.attempts == 1


@pytest.mark.asyncio
async def test_unsupported_url_makes_no_request():
    resolver, requests = _resolver([httpx.Response(200, json={})])
    with pytest.raises(ResolutionError, match="Unsupported"):
        await resolver.resolve("https://youtube.com/watch?v=1")
    assert requests == []
    assert resolver.attempts == 0


@pytest.mark.asyncio
async def test_missing_api_key_is_not_retryable():
    resolver = VideoResolver(client=httpx.AsyncClient(), limiter=_CountingLimiter(), api_key="")
    with pytest.raises(ResolutionError) as exc_info:
        await resolver.resolve(TIKTOK_URL)
    assert not exc_info.value.retryable
    await resolver.close()


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rate_limiter_spaces_permits():
    limiter = RateLimiter(rate_per_second=20)  # 50ms apart
    start = time.monotonic()
    await asyncio.gather(*(limiter.acquire() for _ in range(3)))
    assert time.monotonic() - start >= 0.09


@pytest.mark.asyncio
async def test_rate_limiter_disabled_with_zero_rate():
    limiter = RateLimiter(rate_per_second=0)
    start = time.monotonic()
    for _ in range(10):
        await limiter.acquire()
    assert time.monotonic() - start < 0.05
