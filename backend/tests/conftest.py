"""Shared fixtures and fakes for the ugcpipe test suite.

Persistence runs against a throwaway SQLite file per test. Provider, lookup
service and ffmpeg are replaced by in-process fakes; media staging is real,
with HTTP served by httpx.MockTransport.
"""

from pathlib import Path
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from ugcpipe.db import build_engine, build_session_factory, init_database
from ugcpipe.db.repository import PipelineStore
from ugcpipe.errors import GenerationError, TranscodeError
from ugcpipe.pipeline.runner import JobRunner
from ugcpipe.pipeline.steps import StepProcessor
from ugcpipe.schemas.pipeline import RequestHandle
from ugcpipe.services.media_staging import MediaStager
from ugcpipe.services.object_store import FilesystemObjectStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTranscoder:
    """Writes deterministic output files instead of running ffmpeg.

    Output content is the inputs' bytes joined with the operation name, so
    tests can check ordering (e.g. concat position) from file contents.
    """

    def __init__(self, duration: float = 5.0, fail_on: Optional[str] = None):
        self._duration = duration
        self.fail_on = fail_on
        self.calls: list[tuple[str, list[str], Path]] = []
        self.mix_modes: list[str] = []

    def _write(self, op: str, output: Path, *inputs: Path) -> Path:
        self.calls.append((op, [Path(p).name for p in inputs], Path(output)))
        if self.fail_on == op:
            raise TranscodeError(f"ffmpeg failed: {op}")
        data = b"|".join(Path(p).read_bytes() for p in inputs) + f"|{op}".encode()
        Path(output).write_bytes(data)
        return Path(output)

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def duration(self, path: Path) -> float:
        return self._duration

    async def trim(self, input_path, output_path, max_seconds):
        return self._write("trim", output_path, input_path)

    async def overlay_text(self, input_path, output_path, config):
        return self._write("overlay_text", output_path, input_path)

    async def mix_audio(self, input_path, track_path, output_path,
                        volume=30, fade_in=None, fade_out=None, mode="mix"):
        self.mix_modes.append(mode)
        return self._write("mix_audio", output_path, input_path, track_path)

    async def concat(self, video_paths, output_path):
        return self._write("concat", output_path, *video_paths)

    async def strip_audio(self, input_path, output_path):
        return self._write("strip_audio", output_path, input_path)


class FakeAdapter:
    """In-memory stand-in for GenerationAdapter."""

    def __init__(
        self,
        video_url: str = "https://cdn.example/generated.mp4",
        poll_result: tuple = ("running", None),
        fail_images: tuple = (),
    ):
        self.video_url = video_url
        self.poll_result = poll_result
        self.fail_images = fail_images
        self.submitted: list[tuple[str, dict]] = []
        self.payloads: dict[str, dict] = {}
        self.awaited: list[RequestHandle] = []
        self.polled: list[RequestHandle] = []
        self.on_await = None  # optional async hook(handle)

    async def submit(self, endpoint: str, payload: dict) -> RequestHandle:
        self.submitted.append((endpoint, payload))
        request_id = f"req-{len(self.submitted)}"
        self.payloads[request_id] = payload
        return RequestHandle(endpoint=endpoint, request_id=request_id)

    async def await_completion(self, handle, on_status=None, heartbeat=None):
        self.awaited.append(handle)
        if self.on_await is not None:
            await self.on_await(handle)
        if on_status is not None:
            await on_status("IN_PROGRESS")
        if heartbeat is not None:
            await heartbeat()

    async def fetch_result(self, handle) -> str:
        payload = self.payloads.get(handle.request_id, {})
        image_url = payload.get("image_url") or ""
        if any(bad in image_url for bad in self.fail_images):
            raise GenerationError("Generation failed on provider: content policy")
        return self.video_url

    async def poll(self, handle):
        self.polled.append(handle)
        return self.poll_result


class FakeResolver:
    def __init__(self, play_url: str = "https://cdn.example/source.mp4", error: Optional[Exception] = None):
        self.play_url = play_url
        self.error = error
        self.calls: list[str] = []

    async def resolve(self, source_ref: str) -> str:
        self.calls.append(source_ref)
        if self.error is not None:
            raise self.error
        return self.play_url

    async def close(self):
        pass


def remote_media_handler(request: httpx.Request) -> httpx.Response:
    """Every remote URL serves a small body naming itself."""
    return httpx.Response(200, content=b"remote:" + request.url.path.encode())


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_database(engine)
    yield PipelineStore(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def object_store(tmp_path) -> FilesystemObjectStore:
    return FilesystemObjectStore(tmp_path / "store", public_base_url="https://media.example/store")


@pytest_asyncio.fixture
async def stager(tmp_path, object_store):
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote_media_handler))
    stager = MediaStager(object_store, client=client, scratch_dir=tmp_path / "scratch")
    yield stager
    await client.aclose()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def processor(store, stager, adapter, resolver, transcoder) -> StepProcessor:
    return StepProcessor(store, stager, adapter, resolver, transcoder)


@pytest.fixture
def runner(store, processor, stager, resolver) -> JobRunner:
    return JobRunner(store, processor, stager, resolver)


@pytest.fixture
def scratch_files(tmp_path):
    """Callable listing whatever is left in the scratch directory."""
    def _list() -> list[str]:
        scratch = tmp_path / "scratch"
        return sorted(p.name for p in scratch.iterdir()) if scratch.exists() else []
    return _list
