"""
Unit tests for TokenService.
"""

import pytest
from jose import jwt

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_api.app.auth import (
    DEFAULT_PERMISSIONS,
    InMemoryTokenRevocationIndex,
    TokenClaims,
    TokenService,
    resolve_signing_secret,
)
from service_api.app.clock import ManualClock
from shared.config import get_config
from shared.errors import (
    ConfigurationError,
    InvalidTokenError,
    TokenNotFoundError,
    ValidationError,
)

SECRET = "test-signing-secret"


def _claims(*permissions):
    return TokenClaims(
        organization_id="org-1",
        service_name="svc",
        permissions=tuple(permissions),
        issued_at=0,
        expires_at=3600,
    )


class TestTokenService:
    """Test cases for TokenService."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def index(self):
        return InMemoryTokenRevocationIndex()

    @pytest.fixture
    def token_service(self, index, clock):
        return TokenService(SECRET, index, clock=clock)

    @pytest.mark.asyncio
    async def test_issue_and_verify_round_trip(self, token_service, clock):
        """Test issued claims are recovered by verify."""
        issued = await token_service.issue("org-123", "zapier", ["messages:send"], 120)

        claims = token_service.verify(issued.token)

        assert claims.organization_id == "org-123"
        assert claims.service_name == "zapier"
        assert claims.permissions == ("messages:send",)
        assert claims.issued_at == int(clock.now())
        assert claims.expires_at == int(clock.now()) + 120
        assert claims.token_id == issued.claims.token_id

    @pytest.mark.asyncio
    async def test_issue_defaults(self, token_service, clock):
        issued = await token_service.issue("org-123", "zapier")

        assert issued.claims.permissions == DEFAULT_PERMISSIONS
        assert issued.expires_at == int(clock.now()) + 3600

    @pytest.mark.asyncio
    async def test_issue_registers_record(self, token_service, index):
        issued = await token_service.issue("org-123", "zapier")

        assert len(index) == 1
        assert (await token_service.lookup(issued.token)).claims == issued.claims

    @pytest.mark.asyncio
    async def test_issue_unique_token_ids(self, token_service):
        first = await token_service.issue("org-123", "zapier")
        second = await token_service.issue("org-123", "zapier")

        assert first.token != second.token
        assert first.claims.token_id != second.claims.token_id

    @pytest.mark.asyncio
    async def test_issue_deduplicates_permissions(self, token_service):
        issued = await token_service.issue("org-123", "zapier", ["a", "b", "a"])

        assert issued.claims.permissions == ("a", "b")

    @pytest.mark.asyncio
    async def test_issue_requires_service_name(self, token_service):
        with pytest.raises(ValidationError) as exc_info:
            await token_service.issue("org-123", "")

        assert exc_info.value.extra["required"] == ["service_name"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [-5, 30 * 24 * 3600 + 1])
    async def test_issue_rejects_out_of_range_ttl(self, token_service, ttl):
        with pytest.raises(ValidationError):
            await token_service.issue("org-123", "zapier", ttl_seconds=ttl)

    @pytest.mark.asyncio
    async def test_issue_zero_ttl_uses_default(self, token_service, clock):
        issued = await token_service.issue("org-123", "zapier", ttl_seconds=0)

        assert issued.expires_at == int(clock.now()) + 3600

    @pytest.mark.asyncio
    async def test_issue_rejects_blank_permission(self, token_service):
        with pytest.raises(ValidationError):
            await token_service.issue("org-123", "zapier", ["messages:send", " "])

    @pytest.mark.asyncio
    async def test_verify_expired_token(self, token_service, clock):
        """Test a token is rejected once its expiry has passed."""
        issued = await token_service.issue("org-123", "zapier", ttl_seconds=1)

        clock.advance(2)

        with pytest.raises(InvalidTokenError):
            token_service.verify(issued.token)

    @pytest.mark.asyncio
    async def test_verify_at_exact_expiry(self, token_service, clock):
        issued = await token_service.issue("org-123", "zapier", ttl_seconds=10)

        clock.set(issued.expires_at)

        with pytest.raises(InvalidTokenError):
            token_service.verify(issued.token)

    @pytest.mark.asyncio
    async def test_verify_wrong_secret(self, token_service, index, clock):
        issued = await token_service.issue("org-123", "zapier")
        other = TokenService("another-secret", index, clock=clock)

        with pytest.raises(InvalidTokenError):
            other.verify(issued.token)

    @pytest.mark.asyncio
    async def test_verify_wrong_audience(self, token_service, index, clock):
        issued = await token_service.issue("org-123", "zapier")
        other = TokenService(SECRET, index, audience="other.example.com", clock=clock)

        with pytest.raises(InvalidTokenError):
            other.verify(issued.token)

    @pytest.mark.asyncio
    async def test_verify_wrong_issuer(self, token_service, index, clock):
        issued = await token_service.issue("org-123", "zapier")
        other = TokenService(SECRET, index, issuer="someone-else", clock=clock)

        with pytest.raises(InvalidTokenError):
            other.verify(issued.token)

    def test_verify_garbage(self, token_service):
        with pytest.raises(InvalidTokenError) as exc_info:
            token_service.verify("not-a-token")

        assert exc_info.value.message == "Invalid or expired token"

    def test_verify_missing_claims(self, token_service, clock):
        token = jwt.encode(
            {
                "service_name": "zapier",
                "iat": int(clock.now()),
                "exp": int(clock.now()) + 60,
                "iss": token_service.issuer,
                "aud": token_service.audience,
            },
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            token_service.verify(token)

    @pytest.mark.asyncio
    async def test_revoked_token_still_verifies(self, token_service):
        """Test verify is signature-only while lookup reflects revocation."""
        issued = await token_service.issue("org-123", "zapier")

        await token_service.revoke(issued.token)

        assert token_service.verify(issued.token).organization_id == "org-123"
        assert await token_service.lookup(issued.token) is None
        assert await token_service.is_revoked(issued.token) is True

    @pytest.mark.asyncio
    async def test_revoke_twice(self, token_service):
        issued = await token_service.issue("org-123", "zapier")
        await token_service.revoke(issued.token)

        with pytest.raises(TokenNotFoundError):
            await token_service.revoke(issued.token)

    @pytest.mark.asyncio
    async def test_revoke_other_organization(self, token_service):
        issued = await token_service.issue("org-123", "zapier")

        with pytest.raises(TokenNotFoundError):
            await token_service.revoke(issued.token, organization_id="org-999")

        assert await token_service.lookup(issued.token) is not None

    @pytest.mark.asyncio
    async def test_lookup_expired_record(self, token_service, clock):
        issued = await token_service.issue("org-123", "zapier", ttl_seconds=5)

        clock.advance(5)

        assert await token_service.lookup(issued.token) is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, token_service, index, clock):
        await token_service.issue("org-123", "short", ttl_seconds=5)
        await token_service.issue("org-123", "long", ttl_seconds=500)

        clock.advance(10)

        assert await token_service.purge_expired() == 1
        assert len(index) == 1

    def test_has_permission(self):
        assert TokenService.has_permission(_claims("messages:send"), "messages:send") is True
        assert TokenService.has_permission(_claims("messages:send"), "automations:run") is False
        assert TokenService.has_permission(_claims("*"), "automations:run") is True
        assert TokenService.has_permission(_claims(), "messages:send") is False

    def test_empty_secret_rejected(self, index):
        with pytest.raises(ConfigurationError):
            TokenService("", index)


class TestResolveSigningSecret:
    """Test cases for resolve_signing_secret."""

    def test_configured_secret(self):
        config = get_config("api", 4000, jwt_secret="configured")
        assert resolve_signing_secret(config) == "configured"

    def test_random_fallback(self):
        config = get_config("api", 4000, jwt_secret=None, env="local")

        first = resolve_signing_secret(config)
        second = resolve_signing_secret(config)

        assert first and second
        assert first != second

    def test_required_secret_missing(self):
        config = get_config("api", 4000, jwt_secret=None, jwt_secret_required=True)

        with pytest.raises(ConfigurationError):
            resolve_signing_secret(config)

    def test_production_requires_secret(self):
        config = get_config("api", 4000, jwt_secret=None, env="production")

        with pytest.raises(ConfigurationError):
            resolve_signing_secret(config)
