"""
Filesystem-backed durable object store for ugcpipe.

Objects live flat under ``storage.store_dir`` and are addressed by URL:
``{public_base_url}/{name}`` when a public base is configured (e.g. a static
file server or bucket mirror), otherwise ``file://`` URLs. Every put gets a
fresh name, so no two writers ever touch the same object.

Implements path traversal protection for URL -> path mapping.
"""
import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Optional

from ugcpipe.config import settings

logger = logging.getLogger(__name__)


class FilesystemObjectStore:
    """Durable artifact storage with URL addressing."""

    def __init__(self, base_dir: str | Path | None = None, public_base_url: Optional[str] = None):
        """
        Args:
            base_dir: Root directory for stored objects.
                     If None, uses settings.storage.store_dir
            public_base_url: URL prefix objects are served under.
                     If None, uses settings.storage.public_base_url
        """
        if base_dir is None:
            base_dir = settings.storage.store_dir
        if public_base_url is None:
            public_base_url = settings.storage.public_base_url

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def url_for(self, object_name: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{object_name}"
        return (self.base_dir / object_name).as_uri()

    def owns(self, url: str) -> bool:
        """True if ``url`` addresses an object in this store."""
        if self.public_base_url and url.startswith(self.public_base_url + "/"):
            return True
        return url.startswith(self.base_dir.as_uri() + "/")

    def path_for(self, url: str) -> Path:
        """Map one of this store's URLs back to its file.

        Raises:
            ValueError: If the URL is foreign or escapes base_dir
        """
        if self.public_base_url and url.startswith(self.public_base_url + "/"):
            object_name = url[len(self.public_base_url) + 1:]
        elif url.startswith(self.base_dir.as_uri() + "/"):
            object_name = url[len(self.base_dir.as_uri()) + 1:]
        else:
            raise ValueError(f"URL is not in this store: {url}")

        path = (self.base_dir / object_name).resolve()
        if not path.is_relative_to(self.base_dir):
            raise ValueError("Invalid object path")
        return path

    async def put(self, local_path: Path, name: str) -> str:
        """Copy ``local_path`` into the store under a unique name; return its URL."""
        suffix = Path(local_path).suffix or ".mp4"
        object_name = f"{name}-{uuid.uuid4().hex[:8]}{suffix}"
        dest = (self.base_dir / object_name).resolve()
        if not dest.is_relative_to(self.base_dir):
            raise ValueError("Invalid object name")

        await asyncio.to_thread(_atomic_copy, Path(local_path), dest)
        url = self.url_for(object_name)
        logger.info("Stored %s -> %s", local_path, url)
        return url

    async def get(self, url: str, dest: Path) -> Path:
        """Copy an owned object to ``dest``."""
        src = self.path_for(url)
        await asyncio.to_thread(shutil.copyfile, src, dest)
        return dest


def _atomic_copy(src: Path, dest: Path) -> None:
    """Copy via a temp name so readers never see a half-written object."""
    tmp = dest.with_name(dest.name + ".part")
    try:
        shutil.copyfile(src, tmp)
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink()
