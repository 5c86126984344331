"""
Service token issuance, verification and revocation.

Verification is a two-tier contract:

- ``verify`` checks the signature, issuer, audience and expiry only. It
  never consults the revocation index, so a revoked token still verifies
  until it expires.
- ``lookup`` / ``is_revoked`` consult the revocation index explicitly.
  Only the token validation endpoint does this.
"""

import secrets
import uuid
from typing import Iterable, List, Optional

from jose import JWTError, jwt

from shared.config import BaseConfig
from shared.errors import ConfigurationError, InvalidTokenError, TokenNotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..clock import SystemClock
from .models import IssuedToken, TokenClaims, TokenRecord
from .revocation import TokenRevocationIndex

DEFAULT_PERMISSIONS = ("automations:run", "messages:send")


def resolve_signing_secret(config: BaseConfig) -> str:
    """Resolve the process-wide signing secret once at startup.

    Without a configured secret a random one is generated, which makes every
    issued token unverifiable after a restart. Production environments (or
    ``jwt_secret_required``) refuse to start instead.
    """
    logger = get_logger("api.tokens")
    if config.jwt_secret is not None and config.jwt_secret.get_secret_value():
        return config.jwt_secret.get_secret_value()

    if config.jwt_secret_required or config.is_production:
        raise ConfigurationError(
            "CLIENTFLOW_JWT_SECRET must be set",
            details={"env": config.env},
        )

    logger.warning(
        "No JWT secret configured; using a random per-process secret. "
        "Issued tokens will not survive a restart."
    )
    return secrets.token_hex(64)


class TokenService:
    """Issues, verifies and revokes signed bearer tokens."""

    def __init__(
        self,
        secret: str,
        revocation_index: TokenRevocationIndex,
        *,
        issuer: str = "clientflow-ai-suite",
        audience: str = "api.clientflow.ai",
        algorithm: str = "HS256",
        default_ttl_seconds: int = 3600,
        max_ttl_seconds: int = 30 * 24 * 3600,
        clock=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        if not secret:
            raise ConfigurationError("Token signing secret must not be empty")
        self._secret = secret
        self.revocation_index = revocation_index
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self.default_ttl_seconds = default_ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.logger = get_logger("api.tokens")

    @classmethod
    def from_config(
        cls,
        config: BaseConfig,
        revocation_index: TokenRevocationIndex,
        *,
        clock=None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "TokenService":
        return cls(
            resolve_signing_secret(config),
            revocation_index,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            algorithm=config.jwt_algorithm,
            default_ttl_seconds=config.token_default_ttl_seconds,
            max_ttl_seconds=config.token_max_ttl_seconds,
            clock=clock,
            metrics=metrics,
        )

    def _record(self, operation: str, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_operations_total", operation=operation, status=status)

    def _normalize_permissions(self, permissions: Optional[Iterable[str]]) -> List[str]:
        if permissions is None:
            return list(DEFAULT_PERMISSIONS)

        normalized: List[str] = []
        for permission in permissions:
            if not isinstance(permission, str) or not permission.strip():
                raise ValidationError(
                    "Permissions must be non-empty strings",
                    details={"permissions": list(permissions)},
                )
            if permission.strip() not in normalized:
                normalized.append(permission.strip())
        return normalized

    def _resolve_ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is not None and (isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int)):
            raise ValidationError("expires_in must be an integer number of seconds")
        # Existing clients send 0 to mean "default".
        if not ttl_seconds:
            return self.default_ttl_seconds
        if ttl_seconds < 1 or ttl_seconds > self.max_ttl_seconds:
            raise ValidationError(
                f"expires_in must be between 1 and {self.max_ttl_seconds} seconds",
                details={"expires_in": ttl_seconds},
            )
        return ttl_seconds

    async def issue(
        self,
        organization_id: str,
        service_name: str,
        permissions: Optional[Iterable[str]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedToken:
        """Sign a token for ``service_name`` acting on behalf of ``organization_id``."""
        if not organization_id:
            raise ValidationError("organization_id is required")
        if not service_name or not service_name.strip():
            raise ValidationError(
                "service_name is required",
                error="Missing required fields",
                required=["service_name"],
            )

        scopes = self._normalize_permissions(permissions)
        ttl = self._resolve_ttl(ttl_seconds)
        issued_at = int(self.clock.now())

        claims = TokenClaims(
            organization_id=organization_id,
            service_name=service_name.strip(),
            permissions=tuple(scopes),
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            token_id=uuid.uuid4().hex,
        )
        payload = claims.to_payload()
        payload["iss"] = self.issuer
        payload["aud"] = self.audience

        token = jwt.encode(payload, self._secret, algorithm=self.algorithm)
        await self.revocation_index.add(TokenRecord(token=token, claims=claims), self.clock.now())

        self._record("issue", "ok")
        self.logger.info(
            "JWT token generated",
            organization_id=organization_id,
            service_name=claims.service_name,
            permissions=scopes,
            expires_at=claims.expires_at,
        )
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str) -> TokenClaims:
        """Check signature, issuer, audience and expiry.

        Every failure surfaces as the same InvalidTokenError; the cause is
        only logged.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
            claims = TokenClaims.from_payload(payload)
        except (JWTError, ValueError) as exc:
            self._record("verify", "invalid")
            self.logger.warning("Token verification failed", reason=str(exc))
            raise InvalidTokenError() from exc

        if claims.is_expired(self.clock.now()):
            self._record("verify", "expired")
            self.logger.warning("Token verification failed", reason="expired", expires_at=claims.expires_at)
            raise InvalidTokenError()

        self._record("verify", "ok")
        return claims

    async def lookup(self, token: str) -> Optional[TokenRecord]:
        """Return the live record for ``token``, or None once revoked or expired."""
        record = await self.revocation_index.get(token)
        if record is None or record.claims.is_expired(self.clock.now()):
            return None
        return record

    async def is_revoked(self, token: str) -> bool:
        return await self.lookup(token) is None

    async def revoke(self, token: str, organization_id: Optional[str] = None) -> TokenRecord:
        """Remove ``token`` from the revocation index.

        When ``organization_id`` is given, tokens belonging to another
        organization are reported as not found.
        """
        record = await self.revocation_index.get(token)
        if record is None or (organization_id and record.claims.organization_id != organization_id):
            self._record("revoke", "not_found")
            raise TokenNotFoundError()

        removed = await self.revocation_index.remove(token)
        if removed is None:
            self._record("revoke", "not_found")
            raise TokenNotFoundError()

        self._record("revoke", "ok")
        self.logger.info(
            "JWT token revoked",
            organization_id=removed.claims.organization_id,
            service_name=removed.claims.service_name,
        )
        return removed

    @staticmethod
    def has_permission(claims: TokenClaims, required: str) -> bool:
        """True iff ``required`` or the wildcard is among the granted permissions."""
        return claims.grants(required)

    async def purge_expired(self) -> int:
        return await self.revocation_index.purge_expired(self.clock.now())
