"""Shared exception hierarchy for the engine."""

from __future__ import annotations

from collections.abc import Mapping
from http import HTTPStatus
from typing import Any


class CoreError(Exception):
    """Base exception capturing rich problem details."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        code: str = "core_error",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code)
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable representation of the error."""

        payload: dict[str, Any] = {
            "type": f"https://docs.example.com/errors/{self.code}",
            "title": self.message,
            "status": self.status_code,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(CoreError):
    """Raised when a resource cannot be located."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=HTTPStatus.NOT_FOUND,
            code="not_found",
            details=details,
        )


class ValidationError(CoreError):
    """Raised when a request cannot be acted upon as given."""

    def __init__(
        self,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            code="validation_error",
            details=details,
        )


class ConflictError(CoreError):
    """Raised when an operation conflicts with the current state of a resource."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=HTTPStatus.CONFLICT,
            code="conflict",
            details=details,
        )


class IdentityResolutionError(CoreError):
    """Raised when an event lacks the tenant or user context needed to resolve a lead.

    Callers acknowledge the event and drop it; it is never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=HTTPStatus.ACCEPTED,
            code="identity_unresolved",
            details=details,
        )


class ExternalPlatformError(CoreError):
    """Raised when the chat or commerce platform times out or answers with an error."""

    def __init__(
        self,
        message: str,
        *,
        platform: str,
        operation: str,
        upstream_status: int | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(
            message=message,
            status_code=HTTPStatus.BAD_GATEWAY,
            code="external_platform_error",
            details={
                "platform": platform,
                "operation": operation,
                "upstream_status": upstream_status,
                "timed_out": timed_out,
            },
        )
        self.platform = platform
        self.operation = operation
        self.upstream_status = upstream_status
        self.timed_out = timed_out


class StaleBindingError(CoreError):
    """Raised when a tenant's chat binding no longer points at an accessible guild."""

    def __init__(
        self,
        message: str,
        *,
        tenant_id: str,
        reason: str,
    ) -> None:
        super().__init__(
            message=message,
            status_code=HTTPStatus.CONFLICT,
            code="stale_binding",
            details={"tenant_id": tenant_id, "reason": reason},
        )
        self.tenant_id = tenant_id
        self.reason = reason
