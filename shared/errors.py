"""
Shared error handling for the ClientFlow API layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, ConfigDict

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format.

    Endpoint-specific keys (``required``, ``retryAfter``) are carried as
    extra fields so clients of the original API keep their contract.
    """

    model_config = ConfigDict(extra="allow")

    success: bool = False
    request_id: Optional[str] = None
    code: str
    error: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for API layer services."""

    status_code = 400
    error = "Request failed"

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.extra = extra or {}
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error
        super().__init__(message)

    @property
    def headers(self) -> Dict[str, str]:
        """Extra HTTP headers to send with the error response."""
        return {}

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            error=self.error,
            message=self.message,
            details=self.details,
            **self.extra
        )


class ConfigurationError(AccessLayerException):
    """Invalid or incomplete service configuration."""

    status_code = 500
    error = "Configuration error"

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    status_code = 400
    error = "Validation failed"

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
        *,
        error: Optional[str] = None,
        required: Optional[Any] = None,
    ):
        extra = {"required": required} if required is not None else None
        super().__init__("VALIDATION_ERROR", message, details, error=error, extra=extra)


class MissingOrganizationError(AccessLayerException):
    """No tenant identifier on a tenant-scoped request."""

    status_code = 400
    error = "Missing organization ID"

    def __init__(self, message: str = "Organization ID is required for this endpoint"):
        super().__init__(
            "MISSING_ORGANIZATION",
            message,
            extra={"required": "x-org-id header or orgId query parameter"},
        )


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    status_code = 429
    error = "Rate limit exceeded"

    def __init__(
        self,
        message: str = "Too many requests",
        retry_after: int = 1,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            message,
            details,
            extra={"retryAfter": retry_after},
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class MissingCredentialError(AccessLayerException):
    """No usable bearer token on a protected request."""

    status_code = 401
    error = "Missing or invalid authorization header"

    def __init__(self, message: str = "Bearer token required"):
        super().__init__(
            "MISSING_CREDENTIAL",
            message,
            extra={"required": "Authorization: Bearer <token>"},
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidTokenError(AccessLayerException):
    """Token failed verification.

    The message is identical for every cause (signature, issuer, audience,
    expiry, revocation) so responses cannot be used as an oracle.
    """

    status_code = 401
    error = "Invalid token"

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__("INVALID_TOKEN", message)

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class InsufficientPermissionError(AccessLayerException):
    """Valid token lacking the required permission scope."""

    status_code = 403
    error = "Insufficient permissions"

    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(
            "INSUFFICIENT_PERMISSION",
            f"Required permission: {permission}",
            {"required_permission": permission},
        )


class TokenNotFoundError(AccessLayerException):
    """Revocation target is unknown or already revoked."""

    status_code = 404
    error = "Token not found"

    def __init__(self, message: str = "Token not found or already revoked"):
        super().__init__("TOKEN_NOT_FOUND", message)


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502
    error = "Upstream service error"

    def __init__(
        self,
        service: str,
        message: str = "External service error",
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
    ):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details, status_code=status_code)
