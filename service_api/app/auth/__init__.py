"""
Authentication helpers for the API service.
"""

from .gate import AuthorizationGate
from .models import AuthContext, IssuedToken, TokenClaims, TokenRecord
from .revocation import InMemoryTokenRevocationIndex, RedisTokenRevocationIndex, TokenRevocationIndex
from .tokens import DEFAULT_PERMISSIONS, TokenService, resolve_signing_secret

__all__ = [
    "AuthContext",
    "AuthorizationGate",
    "DEFAULT_PERMISSIONS",
    "InMemoryTokenRevocationIndex",
    "IssuedToken",
    "RedisTokenRevocationIndex",
    "TokenClaims",
    "TokenRecord",
    "TokenRevocationIndex",
    "TokenService",
    "resolve_signing_secret",
]
