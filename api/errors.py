"""
Error taxonomy for the audio pipeline.

Every failure a job can end with is a PipelineError subclass. Each carries
the ``kind`` recorded on the job and the HTTP status the API answers with,
so the orchestrator and the routers map errors in exactly one place.
"""


class PipelineError(Exception):
    """Base class for pipeline failures.

    Attributes:
        message: Human-readable description returned to the caller.
        details: Extra context for logs (stage options, paths, stderr tail).
    """

    kind = "PipelineError"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    """Missing or malformed request fields. Raised before any file I/O."""

    kind = "ValidationError"
    status_code = 400


class UploadTooLargeError(ValidationError):
    status_code = 413


class NotFoundError(PipelineError):
    """The owning account or a referenced source asset does not exist."""

    kind = "NotFoundError"
    status_code = 404


class MalformedInputError(PipelineError):
    """Audio bytes that cannot be read at all (empty or truncated)."""

    kind = "MalformedInputError"
    status_code = 422


class TranscodeError(PipelineError):
    kind = "TranscodeError"
    status_code = 502


class FilterGraphError(PipelineError):
    """The engine rejected or failed a filter graph.

    ``details["stages"]`` lists the stage names and options that were
    submitted.
    """

    kind = "FilterGraphError"
    status_code = 502


class RangeError(PipelineError):
    """Trim bounds fall outside the source."""

    kind = "RangeError"
    status_code = 422


class PipelineTimeoutError(PipelineError):
    """The external engine did not finish within ENGINE_TIMEOUT_S."""

    kind = "TimeoutError"
    status_code = 504


class AssetWriteError(PipelineError):
    kind = "AssetWriteError"
    status_code = 500


class StorageError(PipelineError):
    """Generic disk failure (staging, copying, reading outputs)."""

    kind = "IOError"
    status_code = 500
