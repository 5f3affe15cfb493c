"""Exception hierarchy for the generation pipeline.

Every error carries a machine-readable ``code`` so the CLI and callers
can branch without parsing messages.  Remote failures also say whether
another attempt could succeed (:attr:`RemoteError.retryable`), which is
what :func:`assetsmith.retry.retry` keys off.
"""

from __future__ import annotations


class AssetsmithError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ValidationError(AssetsmithError):
    """Raised when a generation request is malformed."""

    def __init__(self, message: str, *, code: str | None = "VALIDATION_ERROR") -> None:
        super().__init__(message, code=code)


class NotFoundError(AssetsmithError):
    """Raised when a persisted generation result does not exist."""

    def __init__(self, message: str, *, code: str | None = "NOT_FOUND") -> None:
        super().__init__(message, code=code)


# ---------------------------------------------------------------------------
# Remote service errors
# ---------------------------------------------------------------------------


class RemoteError(AssetsmithError):
    """A remote service returned a non-success or malformed response.

    :param status_code: HTTP status code, if the failure came from a response.
    :param retryable: Whether repeating the same call may succeed.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = "API_ERROR",
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code
        self.retryable = retryable


class AuthenticationError(RemoteError):
    """Raised when an API key is missing or rejected."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = "AUTH_INVALID",
        status_code: int | None = 401,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code, retryable=False)


class TaskNotFoundError(RemoteError):
    """Raised when no status endpoint recognises a task id."""

    def __init__(self, message: str, *, code: str | None = "TASK_NOT_FOUND") -> None:
        super().__init__(message, code=code, status_code=404, retryable=False)


class RemoteTaskFailedError(RemoteError):
    """Raised when a remote task reaches a terminal failure state."""

    def __init__(self, message: str, *, task_id: str = "", reason: str = "") -> None:
        super().__init__(message, code="TASK_FAILED", retryable=False)
        self.task_id = task_id
        self.reason = reason


class TaskTimeoutError(AssetsmithError):
    """Raised when a remote task does not finish within its wait budget."""

    def __init__(self, message: str, *, task_id: str = "", waited: float = 0.0) -> None:
        super().__init__(message, code="TIMEOUT")
        self.task_id = task_id
        self.waited = waited


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------


class PipelineError(AssetsmithError):
    """A stage executor failed; wraps the underlying cause.

    :param stage: Value of the stage that failed (e.g. ``"model"``).
    :param cause: The original exception.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        cause: BaseException | None = None,
        result_id: str = "",
    ) -> None:
        code = getattr(cause, "code", None) or "STAGE_FAILED"
        super().__init__(message, code=code)
        self.stage = stage
        self.cause = cause
        self.result_id = result_id


class GenerationCancelledError(AssetsmithError):
    """Raised when a caller-supplied cancel event is set mid-run."""

    def __init__(self, message: str = "Generation cancelled.") -> None:
        super().__init__(message, code="CANCELLED")


__all__ = [
    "AssetsmithError",
    "AuthenticationError",
    "GenerationCancelledError",
    "NotFoundError",
    "PipelineError",
    "RemoteError",
    "RemoteTaskFailedError",
    "TaskNotFoundError",
    "TaskTimeoutError",
    "ValidationError",
]
