"""
Error taxonomy for the lesson processing pipeline.

Each stage raises its own subclass so operators can tell from the stored
`processing_error` where a job died. `describe_error` is the only place that
turns an exception into the user-visible string.
"""

from __future__ import annotations

MAX_ERROR_LENGTH = 300


class ProcessingError(Exception):
    kind = "ProcessingError"
    retryable = True


class FetchError(ProcessingError):
    kind = "FetchError"


class ConversionError(ProcessingError):
    kind = "ConversionError"


class ExtractionError(ProcessingError):
    kind = "ExtractionError"


class AnalysisError(ProcessingError):
    kind = "AnalysisError"


class PersistenceError(ProcessingError):
    kind = "PersistenceError"


class LeaseLostError(ProcessingError):
    """The worker no longer holds the job; another worker owns the lesson now."""

    kind = "LeaseLost"
    retryable = False


class ModelCallError(RuntimeError):
    """Raised by model clients; callers map it onto their own stage error."""


def describe_error(exc: BaseException) -> str:
    """
    Render an exception as "<Kind>: <short cause>" with no traceback detail.
    """
    kind = exc.kind if isinstance(exc, ProcessingError) else "InternalError"
    message = str(exc).strip().splitlines()[0] if str(exc).strip() else exc.__class__.__name__
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3] + "..."
    return f"{kind}: {message}"
