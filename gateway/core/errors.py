from dataclasses import dataclass, field
from typing import Any

from fastapi.responses import JSONResponse


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    type: str
    request_id: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "request_id": self.request_id,
        }
        if self.details:
            error["details"] = dict(self.details)
        return {"error": error}


class GatewayError(Exception):
    """Base for every error that terminates the request pipeline."""

    status_code = 500
    code = "internal_error"
    error_type = "internal"
    audit_action = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else {}


class AuthFailure(GatewayError):
    status_code = 401
    code = "auth_invalid"
    error_type = "auth"
    audit_action = "AUTH_FAILED"

    def __init__(self, message: str = "Invalid authentication"):
        super().__init__(message)


class RateLimitExceeded(GatewayError):
    status_code = 429
    code = "rate_limited"
    error_type = "rate_limit"
    audit_action = "RATE_LIMITED"

    def __init__(self, limit: int, reset_at_seconds: int):
        super().__init__(
            "Rate limit exceeded",
            details={"limit": limit, "reset_at_seconds": reset_at_seconds},
        )
        self.limit = limit
        self.reset_at_seconds = reset_at_seconds


class RouteNotFound(GatewayError):
    status_code = 404
    code = "not_found"
    error_type = "routing"
    audit_action = "NOT_FOUND"

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class ValidationFailure(GatewayError):
    status_code = 400
    code = "validation_failed"
    error_type = "validation"
    audit_action = "VALIDATION_FAILED"


class ConflictError(GatewayError):
    status_code = 409
    code = "conflict"
    error_type = "validation"
    audit_action = "CONFLICT"


class IdentityNotFound(GatewayError):
    status_code = 404
    code = "identity_not_found"
    error_type = "auth"
    audit_action = "LOGIN_FAILED"


class BackendUnavailable(GatewayError):
    status_code = 503
    code = "backend_unavailable"
    error_type = "backend"
    audit_action = "BACKEND_UNAVAILABLE"

    def __init__(
        self,
        message: str = "Backend service unavailable",
        upstream_status: int | None = None,
        reason: str | None = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.reason = reason


class InternalFault(GatewayError):
    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class RouteConfigError(Exception):
    """Raised at startup when the route table is ambiguous."""


def error_response(
    exc: GatewayError, request_id: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=exc.code,
        message=exc.message,
        type=exc.error_type,
        request_id=request_id,
        details=exc.details,
    )
    response = JSONResponse(status_code=exc.status_code, content=envelope.as_dict())
    response.headers.update(headers or {})
    response.headers["x-request-id"] = request_id
    return response
