"""Exception hierarchy for the pipeline engine.

Only ResolutionError carries retry classification; every other error is
fatal to the job that raised it.
"""


class PipelineError(Exception):
    """Base class for engine errors that fail a job."""


class ResolutionError(PipelineError):
    """A social/video reference could not be turned into a playable URL."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class GenerationError(PipelineError):
    """The external generation provider produced no usable artifact."""


class TranscodeError(PipelineError):
    """A local ffmpeg operation failed."""


class ConfigError(PipelineError):
    """A step is missing a required input."""


class StagingError(PipelineError):
    """A download to scratch or an upload to the durable store failed."""
