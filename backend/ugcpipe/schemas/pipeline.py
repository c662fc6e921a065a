"""Pydantic models for pipelines, jobs and batches.

A pipeline is an ordered list of steps. Each step is one variant of a
closed union discriminated by ``type``; step configs are typed models,
never free-form dicts.

Usage:
    steps = parse_pipeline([{"type": "overlay-text", "id": "s1", "config": {"text": "hi"}}])
"""

import uuid
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ---------------------------------------------------------------------------
# Step configs
# ---------------------------------------------------------------------------

GenerationMode = Literal["motion-control", "subtle-animation"]
AudioMode = Literal["mix", "replace"]


class GenerateConfig(BaseModel):
    """Reference-image driven video generation."""

    mode: GenerationMode = "motion-control"
    image_id: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = None
    max_seconds: Optional[float] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[str] = None
    resolution: Optional[str] = None
    generate_audio: Optional[bool] = None
    negative_prompt: Optional[str] = None

    @property
    def needs_input_video(self) -> bool:
        return self.mode == "motion-control"


class TextOverlayConfig(BaseModel):
    text: str
    position: Literal["top", "center", "bottom", "custom"] = "bottom"
    text_align: Literal["left", "center", "right"] = "center"
    custom_x: Optional[float] = None  # 0-100 percent of width
    custom_y: Optional[float] = None  # 0-100 percent of height
    font_size: int = 48
    font_color: str = "#FFFFFF"
    font_family: Optional[str] = None
    text_style: Optional[str] = None
    bg_color: Optional[str] = None
    padding_left: int = 0
    padding_right: int = 0
    words_per_line: Optional[int] = None
    start_time: Optional[float] = None
    duration: Optional[float] = None


class MixAudioConfig(BaseModel):
    track_id: Optional[str] = None
    custom_track_url: Optional[str] = None
    volume: float = 30
    fade_in: Optional[float] = None
    fade_out: Optional[float] = None
    apply_to_steps: list[str] = Field(default_factory=list)
    audio_mode_per_step: dict[str, AudioMode] = Field(default_factory=dict)

    def effective_mode(self) -> AudioMode:
        """Collapse per-step overrides into one mode for the whole mix.

        Any targeted step asking for ``replace`` wins. With no explicit
        targets, every step named in the override map counts as a target.
        """
        targets = self.apply_to_steps or list(self.audio_mode_per_step)
        if any(self.audio_mode_per_step.get(t) == "replace" for t in targets):
            return "replace"
        return "mix"


class AttachClipConfig(BaseModel):
    position: Literal["before", "after"] = "after"
    source_step_id: Optional[str] = None
    social_url: Optional[str] = None
    video_url: Optional[str] = None


class BatchImage(BaseModel):
    image_id: Optional[str] = None
    image_url: Optional[str] = None
    filename: Optional[str] = None


class BatchGenerateConfig(GenerateConfig):
    """Generation settings shared by every image of a batch.

    Expanded into one single-image generate step per child job before
    anything runs.
    """

    images: list[BatchImage] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Step variants
# ---------------------------------------------------------------------------

class _StepBase(BaseModel):
    id: str
    enabled: bool = True


class GenerateStep(_StepBase):
    type: Literal["generate-from-reference"] = "generate-from-reference"
    config: GenerateConfig


class OverlayTextStep(_StepBase):
    type: Literal["overlay-text"] = "overlay-text"
    config: TextOverlayConfig


class MixAudioStep(_StepBase):
    type: Literal["mix-audio"] = "mix-audio"
    config: MixAudioConfig


class AttachClipStep(_StepBase):
    type: Literal["attach-clip"] = "attach-clip"
    config: AttachClipConfig


class BatchGenerateStep(_StepBase):
    type: Literal["batch-generate"] = "batch-generate"
    config: BatchGenerateConfig


PipelineStep = Annotated[
    Union[GenerateStep, OverlayTextStep, MixAudioStep, AttachClipStep, BatchGenerateStep],
    Field(discriminator="type"),
]

_pipeline_adapter = TypeAdapter(list[PipelineStep])


def parse_pipeline(data) -> list:
    """Validate raw JSON step dicts into typed step models."""
    return _pipeline_adapter.validate_python(data)


def dump_pipeline(steps: list) -> list[dict]:
    return _pipeline_adapter.dump_python(steps, mode="json")


# ---------------------------------------------------------------------------
# Job / batch state
# ---------------------------------------------------------------------------

class SourceDescriptor(BaseModel):
    """Where a job's input video comes from.

    ``social`` references still need resolution through the lookup
    service; ``upload`` URLs are directly downloadable.
    """

    kind: Literal["social", "upload"]
    url: str


class StepResult(BaseModel):
    step_id: str
    type: str
    label: str
    output_url: str


class RequestHandle(BaseModel):
    """Durable (endpoint, request id) pair for an in-flight generation."""

    endpoint: str
    request_id: str


class JobRecord(BaseModel):
    """Detached snapshot of a job row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: Optional[str] = None
    status: str
    current_step: int = 0
    total_steps: int = 0
    label: Optional[str] = None
    pipeline: list[PipelineStep] = Field(default_factory=list)
    source: Optional[SourceDescriptor] = None
    output_url: Optional[str] = None
    step_results: list[StepResult] = Field(default_factory=list)
    error: Optional[str] = None
    pending_request: Optional[RequestHandle] = None
    batch_id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def enabled_steps(self) -> list:
        return [step for step in self.pipeline if step.enabled]


class BatchRecord(BaseModel):
    """Detached snapshot of a batch row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    status: str
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    pipeline: list[PipelineStep] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobUpdate(BaseModel):
    """Partial job update.

    Only fields explicitly passed to the constructor are written; an
    explicit ``None`` clears the column, an omitted field is untouched.
    """

    status: Optional[str] = None
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    label: Optional[str] = None
    source: Optional[SourceDescriptor] = None
    output_url: Optional[str] = None
    step_results: Optional[list[StepResult]] = None
    error: Optional[str] = None
    pending_request: Optional[RequestHandle] = None
    batch_id: Optional[uuid.UUID] = None
    completed_at: Optional[datetime] = None


class BatchUpdate(BaseModel):
    """Partial batch update, same semantics as JobUpdate."""

    name: Optional[str] = None
    status: Optional[str] = None
    total_jobs: Optional[int] = None
    completed_jobs: Optional[int] = None
    failed_jobs: Optional[int] = None
    completed_at: Optional[datetime] = None


class JobSpec(BaseModel):
    """Input for creating a job, standalone or as a batch child."""

    pipeline: list[PipelineStep]
    source: Optional[SourceDescriptor] = None
    name: Optional[str] = None
