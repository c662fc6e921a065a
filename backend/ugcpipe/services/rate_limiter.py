"""Process-wide rate limiting for the social video lookup service.

Every lookup attempt (first try and each retry) must take a permit before
it hits the network, so N concurrent jobs never exceed the configured
request rate no matter how their retries interleave.
"""

import asyncio
import logging
import time
from typing import Optional

from ugcpipe.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Async minimum-interval limiter.

    Permits are handed out no closer together than ``1 / rate_per_second``.
    Waiters queue on a lock, so permits are granted in arrival order.
    """

    def __init__(self, rate_per_second: float):
        self.rate_per_second = rate_per_second
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._last_permit = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait = self._last_permit + self.min_interval - now
            if wait > 0:
                logger.debug("Rate limiter: waiting %.2fs for permit", wait)
                await asyncio.sleep(wait)
            self._last_permit = time.monotonic()


# ---------------------------------------------------------------------------
# Module-level lazy singleton
# ---------------------------------------------------------------------------

_lookup_limiter: Optional[RateLimiter] = None


def get_lookup_limiter() -> RateLimiter:
    """Shared limiter in front of the lookup service."""
    global _lookup_limiter
    if _lookup_limiter is None:
        _lookup_limiter = RateLimiter(settings.resolver.rate_per_second)
    return _lookup_limiter
