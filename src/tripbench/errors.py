from __future__ import annotations

from typing import Any

from tripbench.models import GenerationFailure


class TripBenchError(Exception):
    """Base error carrying a stable machine-readable code and an HTTP-like status."""

    status = 500

    def __init__(
        self,
        message: str,
        code: str,
        status: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        if status is not None:
            self.status = status
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class RequestError(TripBenchError):
    status = 400


class NotFoundError(TripBenchError):
    status = 404


class StoreError(TripBenchError):
    status = 502


class ProviderGenerationError(TripBenchError):
    def __init__(self, status: int, failure: GenerationFailure) -> None:
        super().__init__(failure.error, failure.code, status=status, details=failure.details)
        self.failure = failure
