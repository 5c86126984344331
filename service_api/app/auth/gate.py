"""
Authorization gate for protected routes.
"""

from typing import Optional

from shared.errors import InsufficientPermissionError, MissingCredentialError
from shared.logging import get_logger
from .models import AuthContext, TokenClaims
from .tokens import TokenService

BEARER_PREFIX = "Bearer "


class AuthorizationGate:
    """Resolves the bearer token, verifies it and checks the permission scope."""

    def __init__(self, token_service: TokenService):
        self.token_service = token_service
        self.logger = get_logger("api.gate")

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> str:
        """Return the token from an ``Authorization: Bearer <token>`` header value."""
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise MissingCredentialError()

        token = authorization[len(BEARER_PREFIX):].strip()
        if not token:
            raise MissingCredentialError("Authorization header contained an empty bearer token")
        return token

    @staticmethod
    def authorize(claims: TokenClaims, required_permission: str) -> None:
        """Pure permission check over already-verified claims."""
        if not TokenService.has_permission(claims, required_permission):
            raise InsufficientPermissionError(required_permission)

    def authenticate(self, authorization: Optional[str], required_permission: Optional[str] = None) -> AuthContext:
        """Verify the presented token and, if asked, its permission scope.

        The organization carried by the token is authoritative for the
        request; callers must prefer it over any client-supplied tenant.
        """
        token = self.extract_bearer(authorization)
        claims = self.token_service.verify(token)

        if required_permission is not None:
            try:
                self.authorize(claims, required_permission)
            except InsufficientPermissionError:
                self.logger.warning(
                    "Permission denied",
                    organization_id=claims.organization_id,
                    service_name=claims.service_name,
                    required_permission=required_permission,
                )
                raise

        return AuthContext(token=token, claims=claims)
