"""
Unit tests for the request pipeline.
"""

import pytest
from starlette.requests import Request

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_api.app.auth import AuthorizationGate, InMemoryTokenRevocationIndex, TokenService
from service_api.app.clock import ManualClock
from service_api.app.domain import PipelineState, RequestPipeline, RoutePolicy, TenancyResolver
from service_api.app.ratelimit import FixedWindowRateLimiter, InMemoryRateLimitStore, RateLimitPolicy
from shared.errors import (
    InsufficientPermissionError,
    MissingCredentialError,
    MissingOrganizationError,
    RateLimitError,
)


def make_request(headers=None, query_string="", client=("203.0.113.7", 5000), method="GET"):
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": method,
        "path": "/api/test",
        "headers": raw_headers,
        "query_string": query_string.encode(),
        "client": client,
    }
    return Request(scope)


class TestRequestPipeline:
    """Test cases for RequestPipeline."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def token_service(self, clock):
        return TokenService("pipeline-secret", InMemoryTokenRevocationIndex(), clock=clock)

    @pytest.fixture
    def pipeline(self, clock, token_service):
        rate_limiter = FixedWindowRateLimiter(
            InMemoryRateLimitStore(),
            RateLimitPolicy(max_per_ip=2, max_per_org=3),
            clock=clock,
        )
        return RequestPipeline(rate_limiter, TenancyResolver(), AuthorizationGate(token_service))

    def test_client_ip_forwarded_for_uses_proxy_hop(self, pipeline):
        pipeline.trust_forwarded_headers = True
        request = make_request({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
        assert pipeline.client_ip(request) == "10.0.0.1"

    def test_client_ip_real_ip(self, pipeline):
        pipeline.trust_forwarded_headers = True
        request = make_request({"X-Real-IP": "198.51.100.2"})
        assert pipeline.client_ip(request) == "198.51.100.2"

    def test_client_ip_peer(self, pipeline):
        assert pipeline.client_ip(make_request()) == "203.0.113.7"

    def test_client_ip_unknown(self, pipeline):
        assert pipeline.client_ip(make_request(client=None)) == "unknown"

    def test_client_ip_ignores_headers_by_default(self, pipeline):
        request = make_request({"X-Forwarded-For": "198.51.100.1", "X-Real-IP": "198.51.100.2"})

        assert pipeline.client_ip(request) == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_spoofed_forwarded_for_shares_proxy_budget(self, pipeline):
        """Client-chosen leading hops do not open a fresh IP counter."""
        pipeline.trust_forwarded_headers = True
        for i in range(2):
            await pipeline.admit(make_request({"X-Forwarded-For": f"1.2.3.{i}, 10.0.0.1"}))

        with pytest.raises(RateLimitError):
            await pipeline.admit(make_request({"X-Forwarded-For": "1.2.3.99, 10.0.0.1"}))

    def test_is_preflight(self, pipeline):
        assert pipeline.is_preflight(make_request(method="OPTIONS")) is True
        assert pipeline.is_preflight(make_request()) is False

    def test_route_policy_permission_implies_auth(self):
        assert RoutePolicy(required_permission="messages:send").requires_auth is True
        assert RoutePolicy(tenant_scoped=True).requires_auth is False

    @pytest.mark.asyncio
    async def test_admit(self, pipeline):
        context = await pipeline.admit(make_request())

        assert context.state == PipelineState.RATE_CHECKED
        assert context.client_ip == "203.0.113.7"
        assert context.rate_limit.allowed is True

    @pytest.mark.asyncio
    async def test_admit_ip_limited(self, pipeline):
        for _ in range(2):
            await pipeline.admit(make_request())

        with pytest.raises(RateLimitError) as exc_info:
            await pipeline.admit(make_request())

        assert exc_info.value.message == "Too many requests from this IP address"
        assert exc_info.value.retry_after == 900
        assert exc_info.value.headers == {"Retry-After": "900"}

    @pytest.mark.asyncio
    async def test_admit_org_limited(self, pipeline):
        for i in range(3):
            await pipeline.admit(make_request({"x-org-id": "org-1"}, client=(f"10.0.0.{i}", 1)))

        with pytest.raises(RateLimitError) as exc_info:
            await pipeline.admit(make_request({"x-org-id": "org-1"}, client=("10.0.0.9", 1)))

        assert exc_info.value.message == "Too many requests for this organization"

    @pytest.mark.asyncio
    async def test_authorize_tenant_route(self, pipeline):
        request = make_request({"x-org-id": "org-1"})
        context = await pipeline.admit(request)

        context = pipeline.authorize_route(request, context, RoutePolicy(tenant_scoped=True))

        assert context.organization_id == "org-1"
        assert context.state == PipelineState.DISPATCHED

    @pytest.mark.asyncio
    async def test_authorize_tenant_route_missing_org(self, pipeline):
        request = make_request()
        context = await pipeline.admit(request)

        with pytest.raises(MissingOrganizationError):
            pipeline.authorize_route(request, context, RoutePolicy(tenant_scoped=True))

        assert context.state == PipelineState.REJECTED
        assert context.rejection == "MISSING_ORGANIZATION"

    @pytest.mark.asyncio
    async def test_authorize_token_org_overrides_header(self, pipeline, token_service):
        issued = await token_service.issue("org-from-token", "zapier", ["messages:send"])
        request = make_request({
            "x-org-id": "org-from-header",
            "Authorization": f"Bearer {issued.token}",
        })
        context = await pipeline.admit(request)

        context = pipeline.authorize_route(
            request,
            context,
            RoutePolicy(tenant_scoped=True, required_permission="messages:send"),
        )

        assert context.organization_id == "org-from-token"
        assert context.auth.service_name == "zapier"

    @pytest.mark.asyncio
    async def test_authorize_missing_credential(self, pipeline):
        request = make_request()
        context = await pipeline.admit(request)

        with pytest.raises(MissingCredentialError):
            pipeline.authorize_route(request, context, RoutePolicy(authenticated=True))

    @pytest.mark.asyncio
    async def test_authorize_insufficient_permission(self, pipeline, token_service):
        issued = await token_service.issue("org-1", "zapier", ["messages:send"])
        request = make_request({"Authorization": f"Bearer {issued.token}"})
        context = await pipeline.admit(request)

        with pytest.raises(InsufficientPermissionError):
            pipeline.authorize_route(request, context, RoutePolicy(required_permission="automations:run"))

        assert context.state == PipelineState.REJECTED

    @pytest.mark.asyncio
    async def test_guard_without_middleware(self, pipeline):
        request = make_request({"x-org-id": "org-1"})
        dependency = pipeline.guard(RoutePolicy(tenant_scoped=True))

        context = await dependency(request)

        assert context.organization_id == "org-1"
        assert request.state.gate_context is context
