"""
shared/utils/errors.py
Domain errors with a stable machine-readable code.
Rendered by the ServiceError handler in main.py as
{"detail": message, "code": code, ...extra}.
"""

from typing import Optional


class ServiceError(Exception):
    status_code: int = 400
    code: str = "bad_request"
    message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        **extra,
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, **self.extra}


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"
    message = "Resource not found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"
    message = "Resource already exists"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "forbidden"
    message = "Not allowed"


class UnauthorizedError(ServiceError):
    status_code = 401
    code = "unauthorized"
    message = "Unauthorized"


class RateLimitedError(ServiceError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests"


class UpstreamUnavailableError(ServiceError):
    status_code = 503
    code = "upstream_unavailable"
    message = "Upstream service unavailable"


class InvalidStatusError(ServiceError):
    code = "invalid_status"

    def __init__(self, status: str, event: str):
        super().__init__(
            f"Cannot {event.replace('_', ' ')} a booking that is {status}",
            status=status,
        )
