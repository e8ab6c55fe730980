# util/errors.py
from fastapi import HTTPException, status

from util.enums import ErrorMessage


class AppError(HTTPException):
    # Flow: raise AppError to short-circuit with a typed status & message.
    def __init__(
        self, message: str, http_status: int = status.HTTP_400_BAD_REQUEST
    ) -> None:
        super().__init__(status_code=http_status, detail=message)

    @classmethod
    def of(cls, error: ErrorMessage) -> "AppError":
        return cls(error.value.message, error.value.http_status)


class PipelineError(Exception):
    """
    Base for failures raised while a job runs.
    `retryable` tells the queue engine whether another attempt can help.
    """

    retryable: bool = True


class DocumentNotFoundError(PipelineError):
    retryable = False


class DocumentFetchError(PipelineError):
    pass


class UnsupportedContentError(PipelineError):
    retryable = False


class PdfParseError(PipelineError):
    retryable = False


class AIServiceError(PipelineError):
    pass


class IndexUpdateError(PipelineError):
    pass


class JobCancelledError(PipelineError):
    retryable = False

    def __init__(self, message: str = "Job cancelled") -> None:
        super().__init__(message)


class JobDeadlineExceededError(PipelineError):
    pass


class ProcessorNotRegisteredError(PipelineError):
    retryable = False


class QueueClosedError(RuntimeError):
    """Raised by submit once the queue has been stopped."""


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


def describe(exc: BaseException) -> str:
    """Human-readable failure reason for job records."""
    text = str(exc).strip()
    return text or type(exc).__name__
