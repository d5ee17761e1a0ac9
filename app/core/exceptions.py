"""
Error taxonomy for the roster sync engine.

Every error carries a stable ``error_code``, an HTTP-style ``status_code``
for callers that surface it over an API, the originating ``cause`` and free
form ``context``. Errors raised from upstream responses also keep the
upstream status and body so callers can tell not-found, access-denied,
rate-limited and transient-server conditions apart.

Fatal (surfaced, never retried):
- AuthenticationError, RateLimitError, ConfigurationError, CryptoError

Item-level (fail only the entity being reconciled):
- NotFoundError

Control flow:
- AccessDeniedForOrganizationError triggers organization probing
- TransientServerError is retried with backoff before surfacing
- ValidationError rejects local input before any external call
- ConflictError reports a configuration whose sync is already running
"""
from enum import Enum
from typing import Any, Dict, Optional

from app.core.logging import get_correlation_id


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # System errors (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONFIGURATION_ERROR = "1003"
    CRYPTO_ERROR = "1005"

    # Validation errors (2xxx)
    VALIDATION_FAILED = "2000"

    # Resource errors (3xxx)
    NOT_FOUND = "3000"
    CONFLICT = "3002"

    # External service errors (5xxx)
    EXTERNAL_API_ERROR = "5002"
    AUTHENTICATION_FAILED = "5010"
    RATE_LIMITED = "5011"
    ORGANIZATION_ACCESS_DENIED = "5012"
    UPSTREAM_UNAVAILABLE = "5013"


class RosterSyncError(Exception):
    """Base exception with error code, status, cause and context."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context: Any,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.cause = cause
        self.context = context

        correlation_id = get_correlation_id()
        if correlation_id:
            self.context["correlation_id"] = correlation_id

        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for history records and API responses."""
        data = {
            "error": type(self).__name__,
            "error_code": self.error_code.value,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.context:
            data["context"] = self.context
        return data

    def __str__(self) -> str:
        return self.message


# ============================================================================
# Local errors
# ============================================================================

class ConfigurationError(RosterSyncError):
    """Required process configuration (e.g. the master key) is missing."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.CONFIGURATION_ERROR, status_code=500, **kwargs)


class CryptoError(RosterSyncError):
    """Ciphertext or IV is malformed, or decryption failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.CRYPTO_ERROR, status_code=500, **kwargs)


class ValidationError(RosterSyncError):
    """Malformed local input, rejected before any external call."""

    def __init__(self, message: str, errors: Optional[list] = None, **kwargs):
        self.errors = errors or []
        super().__init__(message, error_code=ErrorCode.VALIDATION_FAILED, status_code=400, **kwargs)

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Wrap a pydantic ValidationError."""
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{d['field']}: {d['message']}" for d in details) or str(exc)
        return cls(f"Invalid input: {summary}", errors=details, cause=exc)


class ConflictError(RosterSyncError):
    """A sync for this configuration is already running."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.CONFLICT, status_code=409, **kwargs)


# ============================================================================
# Upstream errors
# ============================================================================

class TwizzitApiError(RosterSyncError):
    """
    Error response (or transport failure) from the federation API.

    Generic 4xx responses raise this class directly; specific conditions use
    the subclasses below.
    """

    default_code = ErrorCode.EXTERNAL_API_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        **kwargs
    ):
        self.upstream_status = status_code
        self.upstream_body = body
        super().__init__(
            message,
            error_code=kwargs.pop("error_code", self.default_code),
            status_code=status_code or 502,
            upstream_status=status_code,
            **kwargs
        )

    @property
    def is_client_error(self) -> bool:
        return self.upstream_status is not None and 400 <= self.upstream_status < 500

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["upstream_status"] = self.upstream_status
        if self.upstream_body is not None:
            data["upstream_body"] = self.upstream_body
        return data


class AuthenticationError(TwizzitApiError):
    """Credentials rejected, or a bearer token the API no longer accepts."""

    default_code = ErrorCode.AUTHENTICATION_FAILED


class RateLimitError(TwizzitApiError):
    """Upstream quota exceeded. Never retried."""

    default_code = ErrorCode.RATE_LIMITED


class NotFoundError(TwizzitApiError):
    """Requested entity does not exist."""

    default_code = ErrorCode.NOT_FOUND


class CredentialNotFoundError(NotFoundError):
    """Stored credential is missing or inactive."""

    def __init__(self, credential_id: Any):
        self.credential_id = credential_id
        super().__init__(f"Twizzit credential not found: {credential_id}")
        self.status_code = 404


class AccessDeniedForOrganizationError(TwizzitApiError):
    """The account may not read data for the specified organization."""

    default_code = ErrorCode.ORGANIZATION_ACCESS_DENIED


class TransientServerError(TwizzitApiError):
    """5xx response, timeout or transport failure. Retried with backoff."""

    default_code = ErrorCode.UPSTREAM_UNAVAILABLE
