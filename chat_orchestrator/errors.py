from __future__ import annotations
from typing import Any, Dict, Optional


class WorkerError(Exception):
    """Base error carrying an error code, an HTTP status and optional detail."""

    code = "WORKER_ERROR"
    status_code = 500

    def __init__(
            self,
            message: str,
            *,
            code: Optional[str] = None,
            status_code: Optional[int] = None,
            details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(WorkerError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(WorkerError):
    code = "NOT_FOUND"
    status_code = 404


class StateTransitionError(WorkerError):
    code = "INVALID_STATE"
    status_code = 409


class OperationTimeoutError(WorkerError):
    code = "TIMEOUT_ERROR"
    status_code = 504

    def __init__(self, operation: str, timeout_s: float) -> None:
        super().__init__(
            f"{operation} timeout after {timeout_s}s",
            details={"operation": operation, "timeout_s": timeout_s},
        )


class UpstreamError(WorkerError):
    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(self, message: str, *, provider: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(
            message,
            details={"provider": provider, "upstream_status": upstream_status},
        )
        self.provider = provider
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        # no status means the request never got an answer
        if self.upstream_status is None:
            return True
        return self.upstream_status == 429 or self.upstream_status >= 500


class ToolError(WorkerError):
    """A tool handler ran and failed."""

    code = "TOOL_ERROR"
    status_code = 422


class ToolNotFound(NotFoundError):
    code = "TOOL_NOT_FOUND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}", details={"tool": name})


class InvalidArguments(ValidationError):
    code = "INVALID_ARGUMENTS"


class SandboxViolation(ToolError):
    code = "SANDBOX_VIOLATION"
    status_code = 403


class RetryError(WorkerError):
    code = "RETRY_EXHAUSTED"
    status_code = 502


class SkillError(WorkerError):
    """A skill reported a terminal failure through its chunk stream."""

    code = "SKILL_ERROR"
    status_code = 502
