from __future__ import annotations


class ImageToolError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ValidationError(ImageToolError):
    """Bad caller input: bounds, sizes, URLs, buffer/dimension mismatches."""


class DecodeError(ImageToolError):
    """Corrupt image bytes or an unsupported MIME type."""


class StorageError(ImageToolError):
    """Read or write failure in the artifact store."""


class TransportError(ImageToolError):
    """Network failure talking to a remote service. Never retried."""


class ConfigurationError(ImageToolError):
    pass


class RemoteTaskError(ImageToolError):
    def __init__(self, code: str = "", message: str = "unknown", *, status_code: int | None = None) -> None:
        super().__init__(f"remote task failed: code={code}, message={message}", status_code=status_code)
        self.code = code
        self.remote_message = message


class TaskTimeoutError(ImageToolError):
    def __init__(self, task_id: str, poll_count: int) -> None:
        super().__init__(f"remote task timed out (task_id={task_id}, poll_count={poll_count})")
        self.task_id = task_id
        self.poll_count = poll_count


RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


def is_retryable_status(status_code: int | None) -> bool:
    return status_code in RETRYABLE_HTTP_STATUSES
