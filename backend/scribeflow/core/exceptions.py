from typing import Optional


class TranscriptionError(Exception):
    """Base error for every failed transcription attempt"""

    kind: str = "Transcription error"

    def __init__(self, detail: str = "", *, kind: Optional[str] = None):
        super().__init__(detail or self.kind)
        self.detail = detail
        if kind:
            self.kind = kind


class InputError(TranscriptionError):
    """Unsupported format, unknown size or a file beyond a size ceiling"""

    kind = "Invalid input"


class ServiceError(TranscriptionError):
    """An HTTP exchange with the transcription service failed"""

    kind = "Service error"

    def __init__(self, detail: str = "", *, status_code: Optional[int] = None, kind: Optional[str] = None):
        super().__init__(detail, kind=kind)
        self.status_code = status_code


class TransientError(ServiceError):
    """Server-side (5xx) or network failure that may succeed on retry"""

    kind = "Temporary service failure"


class RequestRejectedError(ServiceError):
    """The service refused the request (4xx or an explicit failure flag)"""

    kind = "Request rejected"


class ProtocolError(TranscriptionError):
    """Malformed server response, missing fields or an invalid part plan"""

    kind = "Protocol error"


class JobFailedError(TranscriptionError):
    """The remote job reached the failed state"""

    kind = "Transcription job failed"


class JobExpiredError(TranscriptionError):
    """The remote job expired before it completed"""

    kind = "Transcription job expired"


class TranscriptionTimeoutError(TranscriptionError, TimeoutError):
    """The job did not finish within the polling deadline"""

    kind = "Transcription timed out"


class DecodeError(TranscriptionError):
    """Audio could not be decoded, resampled or chunked locally"""

    kind = "Audio decoding failed"


class TranscriptionCancelledError(TranscriptionError):
    """The caller cancelled the transcription"""

    kind = "Transcription cancelled"


def describe_error(error: BaseException, max_length: int = 120) -> str:
    """
    Render an error as a short human-readable message

    Args:
        error: The exception raised by a transcription
        max_length: Upper bound on the message length

    Returns:
        "<kind>: <detail>" truncated with an ellipsis
    """
    if isinstance(error, TranscriptionError):
        detail = (error.detail or "").strip()
        message = f"{error.kind}: {detail}" if detail and detail != error.kind else error.kind
    else:
        message = f"Unexpected error: {error}"

    message = " ".join(message.split())
    if len(message) > max_length:
        return message[: max(0, max_length - 3)].rstrip() + "..."
    return message
