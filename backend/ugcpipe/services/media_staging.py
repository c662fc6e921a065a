"""Media staging between remote URLs, local scratch files and the durable store.

``MediaStager.stage`` downloads to scratch, ``MediaStager.publish`` uploads to
the store. Neither retries; callers own the retry policy.

Scratch files are owned by whoever staged them. ``ScratchScope`` tracks
them and deletes whatever is still tracked when the scope exits, on success
and on error alike. ``sweep_scratch`` removes files a hard crash left behind.

Usage:
    stager = MediaStager(FilesystemObjectStore())
    with ScratchScope() as scratch:
        src = scratch.track(await stager.stage(url, job_id, "source"))
        ...
        url = await stager.publish(out_path, f"template-{job_id}-step-1")
"""

import logging
import secrets
import time
from pathlib import Path
from typing import Optional

import httpx

from ugcpipe.config import settings
from ugcpipe.errors import StagingError
from ugcpipe.services.object_store import FilesystemObjectStore

logger = logging.getLogger(__name__)

_KNOWN_EXTENSIONS = (".mp4", ".mov", ".webm", ".m4a", ".mp3", ".wav", ".aac", ".png", ".jpg", ".jpeg")


def _extension_from_url(url: str, default: str = ".mp4") -> str:
    path = httpx.URL(url).path.lower()
    for ext in _KNOWN_EXTENSIONS:
        if path.endswith(ext):
            return ext
    return default


class MediaStager:
    """Download to scratch and upload to the durable store."""

    def __init__(
        self,
        store: Optional[FilesystemObjectStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        scratch_dir: str | Path | None = None,
    ):
        self.store = store or FilesystemObjectStore()
        self._client = client
        self.scratch_dir = Path(scratch_dir or settings.storage.scratch_dir).resolve()
        self.scratch_dir.mkdir(parents=True, exist_ok=True)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(300.0, connect=30.0),
            )
        return self._client

    def scratch_path(self, prefix: str, job_id, ext: str = ".mp4") -> Path:
        """Collision-free scratch name: ``{prefix}-{job}-{ms}-{rand}{ext}``."""
        millis = int(time.time() * 1000)
        return self.scratch_dir / f"{prefix}-{job_id}-{millis}-{secrets.token_hex(3)}{ext}"

    async def stage(self, url: str, job_id, prefix: str = "stage") -> Path:
        """Download ``url`` into scratch and return the local path.

        Store-owned URLs are copied locally; http(s) URLs are streamed.

        Raises:
            StagingError: on HTTP errors, transport errors or unsupported schemes.
        """
        dest = self.scratch_path(prefix, job_id, _extension_from_url(url))
        try:
            if self.store.owns(url):
                await self.store.get(url, dest)
            elif url.startswith(("http://", "https://")):
                await self._download(url, dest)
            else:
                raise StagingError(f"Cannot stage URL with unsupported scheme: {url}")
        except (OSError, ValueError, httpx.HTTPError) as e:
            dest.unlink(missing_ok=True)
            raise StagingError(f"Failed to stage {url}: {e}") from e
        except BaseException:
            dest.unlink(missing_ok=True)
            raise

        logger.info("Staged %s -> %s", url[:120], dest.name)
        return dest

    async def _download(self, url: str, dest: Path) -> None:
        async with self.client.stream("GET", url) as response:
            if response.status_code < 200 or response.status_code >= 300:
                raise StagingError(f"Download failed: HTTP {response.status_code} for {url[:120]}")
            with open(dest, "wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)

    async def publish(self, local_path: Path, name: str) -> str:
        """Upload ``local_path`` to the durable store and return its URL."""
        try:
            return await self.store.put(local_path, name)
        except OSError as e:
            raise StagingError(f"Failed to publish {local_path}: {e}") from e

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class ScratchScope:
    """Tracks scratch files and deletes the survivors on exit."""

    def __init__(self):
        self._paths: set[Path] = set()

    def __enter__(self) -> "ScratchScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def track(self, path: Path) -> Path:
        self._paths.add(Path(path))
        return path

    def keep(self, path: Path) -> None:
        """Stop tracking ``path``; the caller takes over its lifetime."""
        self._paths.discard(Path(path))

    def release(self, path: Optional[Path]) -> None:
        """Delete ``path`` now and stop tracking it."""
        if path is None:
            return
        path = Path(path)
        self._paths.discard(path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete scratch file %s: %s", path, e)

    def __contains__(self, path) -> bool:
        return Path(path) in self._paths

    def close(self) -> None:
        for path in list(self._paths):
            self.release(path)


def sweep_scratch(scratch_dir: str | Path | None = None, max_age_seconds: Optional[float] = None) -> int:
    """Delete scratch files older than ``max_age_seconds``; return how many."""
    scratch_dir = Path(scratch_dir or settings.storage.scratch_dir)
    if max_age_seconds is None:
        max_age_seconds = settings.recovery.scratch_max_age_hours * 3600
    if not scratch_dir.is_dir():
        return 0

    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in scratch_dir.iterdir():
        if not path.is_file():
            continue
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    logger.info("Scratch sweep removed %d file(s) from %s", removed, scratch_dir)
    return removed
