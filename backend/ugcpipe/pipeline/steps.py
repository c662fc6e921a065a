"""Step processor: executes one pipeline step against the current artifact.

Dispatch is over the closed step union:
- generate-from-reference: reference image (+ trimmed input video for motion
  control) -> external generation -> staged result, optional audio strip
- overlay-text: local drawtext overlay
- mix-audio: stage track, mix or replace soundtrack, release track
- attach-clip: find the clip (earlier step artifact, social URL, direct URL),
  concatenate before/after

Every branch returns a NEW scratch file; the input artifact is left for the
runner to release.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ugcpipe.config import settings
from ugcpipe.db.repository import PipelineStore
from ugcpipe.errors import ConfigError
from ugcpipe.schemas.pipeline import (
    AttachClipStep,
    BatchGenerateStep,
    GenerateStep,
    JobRecord,
    JobUpdate,
    MixAudioStep,
    OverlayTextStep,
    RequestHandle,
    StepResult,
)
from ugcpipe.services.generation_adapter import GenerationAdapter
from ugcpipe.services.media_staging import MediaStager, ScratchScope
from ugcpipe.services.resolver import VideoResolver
from ugcpipe.services.transcoder import Transcoder

logger = logging.getLogger(__name__)


def _require_provider_url(url: str, what: str) -> str:
    """The provider fetches inputs itself; local file URLs never reach it."""
    if not url.startswith(("http://", "https://")):
        raise ConfigError(
            f"{what} must be an http(s) URL the generation provider can fetch, got {url}. "
            f"Set storage.public_base_url so published media is served over HTTP."
        )
    return url


def step_label(step) -> str:
    """Human-readable label for progress text and step results."""
    if isinstance(step, GenerateStep):
        if step.config.mode == "subtle-animation":
            return "Generating video (Veo 3.1 Subtle Animation)"
        return "Generating video (Kling Motion Control)"
    if isinstance(step, OverlayTextStep):
        return "Adding text overlay"
    if isinstance(step, MixAudioStep):
        return "Mixing background music"
    if isinstance(step, AttachClipStep):
        return "Attaching video clip"
    if isinstance(step, BatchGenerateStep):
        return "Batch video generation"
    return step.type


@dataclass
class StepContext:
    """Per-run state the runner shares with the processor."""

    scratch: ScratchScope
    total: int
    # step id -> local artifact the runner still holds
    produced: dict[str, Path] = field(default_factory=dict)
    results: list[StepResult] = field(default_factory=list)
    # handle to await instead of submitting (crash resume)
    resume_handle: Optional[RequestHandle] = None
    on_label: Optional[Callable[[str], Awaitable[None]]] = None


class StepProcessor:
    """Turns (step, current artifact) into the next artifact."""

    def __init__(
        self,
        store: PipelineStore,
        stager: MediaStager,
        adapter: GenerationAdapter,
        resolver: VideoResolver,
        transcoder: Optional[Transcoder] = None,
    ):
        self.store = store
        self.stager = stager
        self.adapter = adapter
        self.resolver = resolver
        self.transcoder = transcoder or Transcoder()

    async def process(
        self,
        step,
        current: Optional[Path],
        job: JobRecord,
        index: int,
        ctx: StepContext,
    ) -> Path:
        if isinstance(step, GenerateStep):
            return await self._generate(step, current, job, index, ctx)
        if isinstance(step, OverlayTextStep):
            return await self._overlay_text(step, self._require_input(current, step), job, index, ctx)
        if isinstance(step, MixAudioStep):
            return await self._mix_audio(step, self._require_input(current, step), job, index, ctx)
        if isinstance(step, AttachClipStep):
            return await self._attach_clip(step, self._require_input(current, step), job, index, ctx)
        if isinstance(step, BatchGenerateStep):
            raise ConfigError("batch-generate steps must be expanded into a batch before running")
        raise ConfigError(f"Unsupported step type: {getattr(step, 'type', type(step).__name__)}")

    @staticmethod
    def _require_input(current: Optional[Path], step) -> Path:
        if current is None:
            raise ConfigError(f"Step {step.id} ({step.type}) requires an input video")
        return current

    def _output_path(self, job: JobRecord, index: int, ctx: StepContext, tag: str = "") -> Path:
        prefix = f"step-{index + 1}{'-' + tag if tag else ''}"
        return ctx.scratch.track(self.stager.scratch_path(prefix, job.id))

    # ------------------------------------------------------------------
    # generate-from-reference
    # ------------------------------------------------------------------

    async def _reference_image_url(self, step: GenerateStep) -> str:
        cfg = step.config
        if cfg.image_url:
            return cfg.image_url
        if cfg.image_id:
            url = await self.store.get_reference_image_url(cfg.image_id)
            if url:
                return url
        raise ConfigError("Model image is required for video generation")

    async def _submit_generation(
        self, step: GenerateStep, current: Optional[Path], job: JobRecord, index: int, ctx: StepContext,
    ) -> RequestHandle:
        cfg = step.config
        gen = settings.generation
        image_url = _require_provider_url(await self._reference_image_url(step), "Reference image")

        if cfg.mode == "subtle-animation":
            endpoint = gen.animation_endpoint
            payload = {
                "image_url": image_url,
                "prompt": cfg.prompt or gen.animation_prompt,
                "aspect_ratio": cfg.aspect_ratio or gen.animation_aspect_ratio,
                "duration": cfg.duration or gen.animation_duration,
                "resolution": cfg.resolution or gen.animation_resolution,
                "generate_audio": (
                    cfg.generate_audio if cfg.generate_audio is not None else gen.animation_generate_audio
                ),
            }
            if cfg.negative_prompt:
                payload["negative_prompt"] = cfg.negative_prompt
        else:
            if current is None:
                raise ConfigError("Motion control requires an input video")
            video_url = await self._publish_motion_input(current, cfg.max_seconds, job, index, ctx)
            endpoint = gen.motion_control_endpoint
            payload = {
                "image_url": image_url,
                "video_url": video_url,
                "character_orientation": "video",
                "keep_original_sound": cfg.generate_audio if cfg.generate_audio is not None else True,
                "prompt": cfg.prompt or gen.motion_prompt,
            }

        handle = await self.adapter.submit(endpoint, payload)
        logger.info(f"Job {job.id} step {index + 1}: submitted {endpoint}, request_id={handle.request_id}")
        # Handle must be durable before blocking on the provider
        await self.store.update_job(job.id, JobUpdate(
            pending_request=handle,
            label=f"Step {index + 1}/{ctx.total}: {step_label(step)} - submitted",
        ))
        return handle

    async def _publish_motion_input(
        self, current: Path, max_seconds: Optional[float], job: JobRecord, index: int, ctx: StepContext,
    ) -> str:
        """Trim the input to the step's limit and publish it for the provider."""
        max_sec = max_seconds or settings.generation.default_max_seconds
        duration = await self.transcoder.duration(current)
        trimmed = None
        to_upload = current
        if duration > max_sec:
            trimmed = self._output_path(job, index, ctx, "trimmed")
            await self.transcoder.trim(current, trimmed, max_sec)
            to_upload = trimmed
        try:
            url = await self.stager.publish(to_upload, f"mc-input-{job.id}-step-{index + 1}")
        finally:
            ctx.scratch.release(trimmed)
        return _require_provider_url(url, "Motion control input video")

    async def _generate(
        self, step: GenerateStep, current: Optional[Path], job: JobRecord, index: int, ctx: StepContext,
    ) -> Path:
        handle = ctx.resume_handle
        if handle is not None:
            logger.info(
                f"Job {job.id} step {index + 1}: resuming request {handle.request_id} without resubmitting"
            )
        else:
            handle = await self._submit_generation(step, current, job, index, ctx)

        async def _on_status(raw_status: str) -> None:
            if ctx.on_label is not None:
                await ctx.on_label(f"Step {index + 1}/{ctx.total}: {step_label(step)} ({raw_status.lower()})")

        async def _heartbeat() -> None:
            await self.store.touch_job(job.id)

        await self.adapter.await_completion(handle, on_status=_on_status, heartbeat=_heartbeat)
        video_url = await self.adapter.fetch_result(handle)

        output = ctx.scratch.track(await self.stager.stage(video_url, job.id, f"step-{index + 1}"))
        if step.config.generate_audio is False:
            silent = self._output_path(job, index, ctx, "silent")
            await self.transcoder.strip_audio(output, silent)
            ctx.scratch.release(output)
            return silent
        return output

    # ------------------------------------------------------------------
    # overlay-text
    # ------------------------------------------------------------------

    async def _overlay_text(
        self, step: OverlayTextStep, current: Path, job: JobRecord, index: int, ctx: StepContext,
    ) -> Path:
        output = self._output_path(job, index, ctx)
        await self.transcoder.overlay_text(current, output, step.config)
        return output

    # ------------------------------------------------------------------
    # mix-audio
    # ------------------------------------------------------------------

    async def _track_url(self, step: MixAudioStep) -> str:
        cfg = step.config
        if cfg.custom_track_url:
            return cfg.custom_track_url
        if cfg.track_id:
            url = await self.store.get_music_track_url(cfg.track_id)
            if url:
                return url
            # Older pipelines stored the track URL itself in track_id
            if cfg.track_id.startswith(("http://", "https://", "file://")):
                return cfg.track_id
        raise ConfigError("No music track specified")

    async def _mix_audio(
        self, step: MixAudioStep, current: Path, job: JobRecord, index: int, ctx: StepContext,
    ) -> Path:
        cfg = step.config
        track_url = await self._track_url(step)
        mode = cfg.effective_mode()
        track = ctx.scratch.track(await self.stager.stage(track_url, job.id, "music"))
        try:
            output = self._output_path(job, index, ctx)
            await self.transcoder.mix_audio(
                current, track, output,
                volume=cfg.volume, fade_in=cfg.fade_in, fade_out=cfg.fade_out, mode=mode,
            )
            return output
        finally:
            ctx.scratch.release(track)

    # ------------------------------------------------------------------
    # attach-clip
    # ------------------------------------------------------------------

    async def _attach_clip(
        self, step: AttachClipStep, current: Path, job: JobRecord, index: int, ctx: StepContext,
    ) -> Path:
        cfg = step.config
        clip: Optional[Path] = None
        fresh = False

        if cfg.source_step_id:
            local = ctx.produced.get(cfg.source_step_id)
            if local is not None and local.exists():
                clip = local
                logger.info(f"Job {job.id}: attaching local output of step {cfg.source_step_id}")
            else:
                published = next(
                    (r.output_url for r in ctx.results if r.step_id == cfg.source_step_id), None,
                )
                if published:
                    clip = await self.stager.stage(published, job.id, "attach")
                    fresh = True
        if clip is None and cfg.social_url:
            play_url = await self.resolver.resolve(cfg.social_url)
            clip = await self.stager.stage(play_url, job.id, "attach")
            fresh = True
        if clip is None and cfg.video_url:
            clip = await self.stager.stage(cfg.video_url, job.id, "attach")
            fresh = True
        if clip is None:
            raise ConfigError("No video source for attach-clip step")

        if fresh:
            ctx.scratch.track(clip)
        try:
            output = self._output_path(job, index, ctx)
            ordered = [clip, current] if cfg.position == "before" else [current, clip]
            await self.transcoder.concat(ordered, output)
            return output
        finally:
            if fresh:
                ctx.scratch.release(clip)
