"""Social video resolution via RapidAPI lookup services.

Turns a TikTok or Instagram post URL into a directly downloadable video
URL. Each lookup attempt takes a permit from the shared lookup rate
limiter, then performs one HTTP request. Failures are classified:

- retryable: HTTP 429 / 5xx, transport errors, unparseable bodies and the
  lookup service's transient "Video not found" reply
- non-retryable: any other non-2xx, a 2xx body without a video URL, or an
  unsupported source URL

Retryable failures back off exponentially (base * 2^(attempt-1)) up to
``resolver.max_attempts`` tries; the last failure is re-raised.

Usage:
    resolver = VideoResolver()
    play_url = await resolver.resolve("https://www.tiktok.com/@u/video/123")
"""

import logging
import re
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ugcpipe.config import settings
from ugcpipe.errors import ResolutionError
from ugcpipe.schemas.pipeline import SourceDescriptor
from ugcpipe.services.rate_limiter import RateLimiter, get_lookup_limiter

logger = logging.getLogger(__name__)

_TIKTOK_RE = re.compile(r"tiktok\.com", re.IGNORECASE)
_INSTAGRAM_RE = re.compile(r"instagram\.com/(p|reel|reels)/", re.IGNORECASE)

# Key lookup order for the TikTok download endpoint; unwatermarked first
_TIKTOK_TOP_KEYS = ("play", "hdplay", "wmplay")
_TIKTOK_DATA_KEYS = ("play", "hdplay", "wmplay", "video_url", "nwm_video_url", "wm_video_url")
_TIKTOK_RESULT_KEYS = ("play", "video_url")


def detect_source_kind(url: str) -> Optional[str]:
    """Return ``"tiktok"``, ``"instagram"`` or None for unsupported URLs."""
    if _TIKTOK_RE.search(url):
        return "tiktok"
    if _INSTAGRAM_RE.search(url):
        return "instagram"
    return None


def describe_source(url: str) -> SourceDescriptor:
    """Social post URLs need resolution; anything else is downloaded as-is."""
    url = url.strip()
    kind = "social" if detect_source_kind(url) else "upload"
    return SourceDescriptor(kind=kind, url=url)


def _first_str(data: dict, keys) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_tiktok_url(payload: dict) -> Optional[str]:
    """Pull the play URL out of a TikTok download response."""
    url = _first_str(payload, _TIKTOK_TOP_KEYS)
    if url:
        return url
    data = payload.get("data")
    if isinstance(data, dict):
        url = _first_str(data, _TIKTOK_DATA_KEYS)
        if url:
            return url
    result = payload.get("result")
    if isinstance(result, dict):
        url = _first_str(result, _TIKTOK_RESULT_KEYS)
        if url:
            return url
    return _first_str(payload, ("play_watermark",))


def extract_instagram_url(payload: dict) -> Optional[str]:
    """Pull the video URL out of an Instagram post-dl response."""
    data = payload.get("data")
    if isinstance(data, dict):
        for media in data.get("medias") or []:
            if isinstance(media, dict):
                url = _first_str(media, ("link", "url"))
                if url:
                    return url
        url = _first_str(data, ("video_url", "url"))
        if url:
            return url
    elif isinstance(data, list) and data and isinstance(data[0], dict):
        url = _first_str(data[0], ("url", "link", "video_url"))
        if url:
            return url
    return _first_str(payload, ("video_url", "url"))


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ResolutionError) and exc.retryable


class VideoResolver:
    """Resolve social post URLs into playable media URLs."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        api_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self._client = client
        self._limiter = limiter
        self.api_key = api_key if api_key is not None else settings.providers.rapidapi_key
        self.max_attempts = max_attempts or settings.resolver.max_attempts
        self.base_delay = base_delay if base_delay is not None else settings.resolver.base_delay
        self.attempts = 0  # lookups performed over this resolver's lifetime

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(settings.resolver.timeout, connect=10.0),
            )
        return self._client

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is None:
            self._limiter = get_lookup_limiter()
        return self._limiter

    async def resolve(self, source_ref: str) -> str:
        """Resolve ``source_ref`` to a playable URL.

        Raises:
            ResolutionError: non-retryable immediately, retryable only after
                every attempt has been used.
        """
        source_ref = source_ref.strip()
        kind = detect_source_kind(source_ref)
        if kind is None:
            raise ResolutionError(f"Unsupported video URL: {source_ref}", retryable=False)
        if not self.api_key:
            raise ResolutionError("RapidAPI key not configured", retryable=False)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self.limiter.acquire()
                n = attempt.retry_state.attempt_number
                logger.info("Resolving %s URL (attempt %d/%d)", kind, n, self.max_attempts)
                play_url = await self._lookup(kind, source_ref)
        logger.info("Resolved %s -> %s...", source_ref, play_url[:100])
        return play_url

    async def _lookup(self, kind: str, source_ref: str) -> str:
        """One lookup request, classified into success or ResolutionError."""
        if kind == "tiktok":
            host = settings.providers.tiktok_host
            path = "/api/download/video"
        else:
            host = settings.providers.instagram_host
            path = "/post-dl"

        self.attempts += 1
        try:
            response = await self.client.get(
                f"https://{host}{path}",
                params={"url": source_ref},
                headers={"x-rapidapi-host": host, "x-rapidapi-key": self.api_key},
            )
        except httpx.TransportError as e:
            raise ResolutionError(f"{kind} lookup request error: {e}", retryable=True) from e

        status = response.status_code
        if status == 429:
            raise ResolutionError(f"{kind} lookup rate limited (HTTP 429)", retryable=True)
        if status >= 500:
            raise ResolutionError(f"{kind} lookup server error (HTTP {status})", retryable=True)
        if status < 200 or status >= 300:
            logger.error("%s lookup HTTP %d: %s", kind, status, response.text[:300])
            raise ResolutionError(f"{kind} lookup failed (HTTP {status})", retryable=False)

        try:
            payload = response.json()
        except ValueError as e:
            raise ResolutionError(f"{kind} lookup returned unparseable body", retryable=True) from e
        if not isinstance(payload, dict):
            raise ResolutionError(f"{kind} lookup returned unexpected body", retryable=True)

        if payload.get("error") == "Video not found":
            raise ResolutionError("Video not found", retryable=True)

        if kind == "tiktok":
            play_url = extract_tiktok_url(payload)
        else:
            play_url = extract_instagram_url(payload)
        if not play_url:
            logger.error("%s lookup response keys without video URL: %s", kind, list(payload))
            raise ResolutionError(f"No video URL in {kind} lookup response", retryable=False)
        return play_url

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
