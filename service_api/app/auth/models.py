"""
Token data carried through the auth layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Tuple

WILDCARD_PERMISSION = "*"


def isoformat(timestamp: float) -> str:
    """Render epoch seconds as an ISO-8601 UTC string with a Z suffix."""
    value = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class TokenClaims:
    """Claims embedded in a signed service token."""

    organization_id: str
    service_name: str
    permissions: Tuple[str, ...]
    issued_at: int
    expires_at: int
    token_id: str = ""

    @property
    def permission_set(self) -> FrozenSet[str]:
        return frozenset(self.permissions)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def grants(self, permission: str) -> bool:
        scopes = self.permission_set
        return permission in scopes or WILDCARD_PERMISSION in scopes

    def to_payload(self) -> Dict[str, Any]:
        """JWT payload, without the issuer/audience fields added at signing time."""
        return {
            "organization_id": self.organization_id,
            "service_name": self.service_name,
            "permissions": list(self.permissions),
            "iat": self.issued_at,
            "exp": self.expires_at,
            "jti": self.token_id,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        """Build claims from a decoded JWT payload.

        Raises ValueError when a required claim is missing or malformed.
        """
        organization_id = payload.get("organization_id")
        service_name = payload.get("service_name")
        permissions = payload.get("permissions", [])
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")

        if not isinstance(organization_id, str) or not organization_id:
            raise ValueError("organization_id claim missing")
        if not isinstance(service_name, str) or not service_name:
            raise ValueError("service_name claim missing")
        if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
            raise ValueError("permissions claim malformed")
        if not isinstance(issued_at, int) or not isinstance(expires_at, int):
            raise ValueError("iat/exp claims malformed")

        return cls(
            organization_id=organization_id,
            service_name=service_name,
            permissions=tuple(permissions),
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(payload.get("jti") or ""),
        )


@dataclass(frozen=True)
class TokenRecord:
    """Server-side shadow of an issued token."""

    token: str
    claims: TokenClaims

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "claims": self.claims.to_payload()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(token=data["token"], claims=TokenClaims.from_payload(data["claims"]))


@dataclass(frozen=True)
class IssuedToken:
    """Result of issuing a token."""

    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> int:
        return self.claims.expires_at


@dataclass(frozen=True)
class AuthContext:
    """Authenticated request context derived from a verified token."""

    token: str
    claims: TokenClaims

    @property
    def organization_id(self) -> str:
        return self.claims.organization_id

    @property
    def service_name(self) -> str:
        return self.claims.service_name
