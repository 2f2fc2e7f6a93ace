from __future__ import annotations

from typing import Any

__all__ = [
    "AbortedError",
    "BadRequestIdError",
    "NetworkFailureError",
    "NoCandidatesError",
    "OrchestratorError",
    "RequestTimeoutError",
    "UpstreamError",
]


class OrchestratorError(Exception):
    code = "ORCHESTRATOR_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(message)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NoCandidatesError(OrchestratorError, ValueError):
    code = "NO_CANDIDATES"

    def __init__(self, requested: list[str] | None = None):
        self.requested = list(requested or [])
        super().__init__(
            "No usable model candidates were supplied.",
            details={"requested": self.requested},
        )


class BadRequestIdError(OrchestratorError, ValueError):
    code = "BAD_REQUEST_ID"

    def __init__(self, message: str = "requestId is required"):
        super().__init__(message)


class AbortedError(OrchestratorError):
    code = "ABORTED"

    def __init__(self, reason: str | None = None):
        self.reason = reason or "ABORTED"
        super().__init__(f"request aborted ({self.reason})", details={"reason": self.reason})


class RequestTimeoutError(OrchestratorError):
    code = "TIMEOUT"
    retryable = True

    def __init__(self, message: str = "request timeout", *, timeout_seconds: float | None = None):
        self.timeout_seconds = timeout_seconds
        details = {} if timeout_seconds is None else {"timeout_seconds": timeout_seconds}
        super().__init__(message, details=details)


class NetworkFailureError(OrchestratorError):
    code = "NETWORK_FAILURE"
    retryable = True

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None):
        self.diagnostics = diagnostics or {}
        details = {"diagnostics": self.diagnostics} if self.diagnostics else {}
        super().__init__(message, details=details)


class UpstreamError(OrchestratorError):
    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        *,
        status: int,
        message: str | None = None,
        retry_after_seconds: float | None = None,
        body: Any = None,
    ):
        self.status = int(status)
        self.retry_after_seconds = retry_after_seconds
        self.body = body
        super().__init__(
            message or f"upstream responded with HTTP {self.status}",
            details={
                "status": self.status,
                "retry_after_seconds": retry_after_seconds,
            },
        )

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status == 429 or 500 <= self.status < 600
