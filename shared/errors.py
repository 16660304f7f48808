"""
Shared error handling for PTO Connect API.

Every failure raised inside the request pipeline is an ``APIError`` carrying a
taxonomy code. Anything else is normalized once, at the edge, by
``classify_exception``.
"""

import socket
from enum import Enum
from typing import Dict, Any, Optional

import httpx
from pydantic import BaseModel
from supabase import PostgrestAPIError


class ErrorCode(str, Enum):
    """Client-visible error taxonomy."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    API_KEY_INVALID_FORMAT = "API_KEY_INVALID_FORMAT"
    UNAUTHORIZED = "UNAUTHORIZED"
    API_KEY_INVALID = "API_KEY_INVALID"
    API_KEY_EXPIRED = "API_KEY_EXPIRED"
    API_KEY_REQUIRED = "API_KEY_REQUIRED"
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    INSUFFICIENT_TIER = "INSUFFICIENT_TIER"
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    NOT_FOUND = "NOT_FOUND"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    CONFLICT = "CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DATABASE_ERROR = "DATABASE_ERROR"
    FOREIGN_KEY_VIOLATION = "FOREIGN_KEY_VIOLATION"
    CHECK_VIOLATION = "CHECK_VIOLATION"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.API_KEY_INVALID_FORMAT: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.API_KEY_INVALID: 401,
    ErrorCode.API_KEY_EXPIRED: 401,
    ErrorCode.API_KEY_REQUIRED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INSUFFICIENT_PERMISSIONS: 403,
    ErrorCode.INSUFFICIENT_TIER: 403,
    ErrorCode.SUBSCRIPTION_REQUIRED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ROUTE_NOT_FOUND: 404,
    ErrorCode.METHOD_NOT_ALLOWED: 405,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DUPLICATE_ENTRY: 409,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.FOREIGN_KEY_VIOLATION: 500,
    ErrorCode.CHECK_VIOLATION: 500,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.UNKNOWN_ERROR: 500,
}

# Postgres constraint violations surfaced by PostgREST
PG_CONSTRAINT_CODES: Dict[str, ErrorCode] = {
    "23505": ErrorCode.DUPLICATE_ENTRY,
    "23503": ErrorCode.FOREIGN_KEY_VIOLATION,
    "23514": ErrorCode.CHECK_VIOLATION,
}


class ErrorDetail(BaseModel):
    """A single entry of the envelope's ``errors`` list."""

    code: str
    message: str
    field: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Tagged error understood by the global error handler."""

    default_code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = ErrorCode(code) if code is not None else self.default_code
        self.message = message or self.default_message
        self.field = field
        self.details = details
        self.status_code = status_code or STATUS_BY_CODE.get(self.code, 500)
        self.headers = headers or {}
        super().__init__(self.message)

    def to_error(self) -> ErrorDetail:
        """Convert to an envelope error entry."""
        return ErrorDetail(
            code=self.code.value,
            message=self.message,
            field=self.field,
            details=self.details,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, status={self.status_code})"


class ValidationError(APIError):
    """Bad input."""

    default_code = ErrorCode.VALIDATION_ERROR
    default_message = "Validation failed"


class AuthenticationError(APIError):
    """Missing or rejected credentials."""

    default_code = ErrorCode.UNAUTHORIZED
    default_message = "Authentication required"


class AuthorizationError(APIError):
    """Authenticated caller lacks access."""

    default_code = ErrorCode.FORBIDDEN
    default_message = "Access denied"


class NotFoundError(APIError):
    default_code = ErrorCode.NOT_FOUND
    default_message = "Resource not found"


class ConflictError(APIError):
    default_code = ErrorCode.CONFLICT
    default_message = "Resource conflict"


class RateLimitError(APIError):
    """Rate limiting errors."""

    default_code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 meta: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(message=message, details=details, headers=headers)
        self.meta = meta or {}


class DatabaseError(APIError):
    """Datastore query failure."""

    default_code = ErrorCode.DATABASE_ERROR
    default_message = "Database operation failed"

    def __init__(self, message: Optional[str] = None, pg_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code=PG_CONSTRAINT_CODES.get(pg_code or "", ErrorCode.DATABASE_ERROR),
                         message=message, details=details)
        self.pg_code = pg_code


class ServiceUnavailableError(APIError):
    """External services errors."""

    default_code = ErrorCode.SERVICE_UNAVAILABLE
    default_message = "External service unavailable"


# Error classes recognized by name, whatever module raised them
ERRORS_BY_NAME: Dict[str, ErrorCode] = {
    "ValidationError": ErrorCode.VALIDATION_ERROR,
    "RequestValidationError": ErrorCode.VALIDATION_ERROR,
    "UnauthorizedError": ErrorCode.UNAUTHORIZED,
    "JsonWebTokenError": ErrorCode.UNAUTHORIZED,
    "ForbiddenError": ErrorCode.FORBIDDEN,
    "NotFoundError": ErrorCode.NOT_FOUND,
    "ConflictError": ErrorCode.CONFLICT,
    "TooManyRequestsError": ErrorCode.RATE_LIMIT_EXCEEDED,
}

CONNECTION_ERRORS = (ConnectionError, socket.gaierror, httpx.ConnectError)


def classify_exception(exc: BaseException) -> APIError:
    """Normalize an arbitrary exception into an ``APIError``."""
    if isinstance(exc, APIError):
        return exc

    name = type(exc).__name__
    if name in ERRORS_BY_NAME:
        code = ERRORS_BY_NAME[name]
        return APIError(code=code, message=str(exc) or None)

    pg_code = getattr(exc, "code", None)
    if isinstance(exc, PostgrestAPIError) or (isinstance(pg_code, str) and pg_code.startswith("23")):
        return DatabaseError(message=getattr(exc, "message", None) or str(exc) or None, pg_code=pg_code)

    if isinstance(exc, CONNECTION_ERRORS):
        return ServiceUnavailableError()

    return APIError()
