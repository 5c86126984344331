"""
Request pipeline for the API service.

Every request moves through a fixed sequence of gates:

    Received -> RateChecked -> (TenantResolved) -> (Authorized) -> Dispatched

with ``Rejected`` reachable from any state. Pre-flight requests end at
``Received``. The middleware runs the rate gate for every request; the
per-route gates run as a FastAPI dependency built from a RoutePolicy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shared.base_service import error_response
from shared.errors import AccessLayerException, RateLimitError
from shared.logging import get_logger, set_caller_context, set_client_ip
from ..auth.gate import AuthorizationGate
from ..auth.models import AuthContext
from ..ratelimit.limiter import FixedWindowRateLimiter, RateLimitDecision
from .tenancy import TenancyResolver

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Origin, X-Requested-With, Content-Type, Accept, Authorization, x-org-id",
}


class PipelineState(str, Enum):
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    TENANT_RESOLVED = "tenant_resolved"
    AUTHORIZED = "authorized"
    DISPATCHED = "dispatched"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RoutePolicy:
    """Gates a route requires beyond rate limiting.

    A required permission implies authentication.
    """

    tenant_scoped: bool = False
    authenticated: bool = False
    required_permission: Optional[str] = None

    @property
    def requires_auth(self) -> bool:
        return self.authenticated or self.required_permission is not None


@dataclass
class RequestContext:
    """Per-request gatekeeping state, stored on ``request.state.gate_context``."""

    client_ip: str
    state: PipelineState = PipelineState.RECEIVED
    organization_id: Optional[str] = None
    auth: Optional[AuthContext] = None
    rate_limit: Optional[RateLimitDecision] = None
    rejection: Optional[str] = None

    def advance(self, state: PipelineState) -> None:
        self.state = state

    def reject(self, exc: AccessLayerException) -> AccessLayerException:
        self.state = PipelineState.REJECTED
        self.rejection = exc.code
        return exc


class RequestPipeline:
    """Orchestrates rate limiting, tenancy resolution and authorization."""

    def __init__(
        self,
        rate_limiter: FixedWindowRateLimiter,
        tenancy: TenancyResolver,
        gate: AuthorizationGate,
        *,
        trust_forwarded_headers: bool = False,
    ):
        self.rate_limiter = rate_limiter
        self.tenancy = tenancy
        self.gate = gate
        self.trust_forwarded_headers = trust_forwarded_headers
        self.logger = get_logger("api.pipeline")

    def client_ip(self, request: Request) -> str:
        """Extract the caller IP.

        Proxy headers are only read when trusted, and then only the hop
        appended by our own proxy (the last one) counts; earlier entries
        are whatever the client chose to send.
        """
        if self.trust_forwarded_headers:
            forwarded_for = request.headers.get("X-Forwarded-For")
            if forwarded_for:
                last_hop = forwarded_for.split(",")[-1].strip()
                if last_hop:
                    return last_hop
            real_ip = request.headers.get("X-Real-IP")
            if real_ip and real_ip.strip():
                return real_ip.strip()
        if request.client and request.client.host:
            return request.client.host
        return "unknown"

    @staticmethod
    def is_preflight(request: Request) -> bool:
        return request.method == "OPTIONS"

    async def admit(self, request: Request) -> RequestContext:
        """Run the rate gate. Raises RateLimitError when either scope denies."""
        context = RequestContext(client_ip=self.client_ip(request))
        set_client_ip(context.client_ip)
        decision = await self.rate_limiter.admit(context.client_ip, self.tenancy.peek(request))
        context.rate_limit = decision

        if not decision.allowed:
            blocking = decision.denied_by
            message = (
                "Too many requests from this IP address"
                if blocking.scope == "ip"
                else "Too many requests for this organization"
            )
            raise context.reject(RateLimitError(message, retry_after=decision.retry_after))

        context.advance(PipelineState.RATE_CHECKED)
        return context

    def authorize_route(self, request: Request, context: RequestContext, policy: RoutePolicy) -> RequestContext:
        """Run the tenant and authorization gates required by ``policy``."""
        try:
            if policy.tenant_scoped:
                context.organization_id = self.tenancy.resolve(request)
                context.advance(PipelineState.TENANT_RESOLVED)

            if policy.requires_auth:
                auth = self.gate.authenticate(
                    request.headers.get("Authorization"),
                    policy.required_permission,
                )
                context.auth = auth
                context.organization_id = auth.organization_id
                context.advance(PipelineState.AUTHORIZED)
        except AccessLayerException as exc:
            raise context.reject(exc)

        set_caller_context(
            organization_id=context.organization_id,
            service_name=context.auth.service_name if context.auth else None,
        )
        context.advance(PipelineState.DISPATCHED)
        return context

    def guard(self, policy: RoutePolicy) -> Callable:
        """Build a FastAPI dependency enforcing ``policy`` on a route."""

        async def dependency(request: Request) -> RequestContext:
            context = getattr(request.state, "gate_context", None)
            if context is None:
                # Route mounted without the gatekeeper middleware.
                context = RequestContext(client_ip=self.client_ip(request))
                context.advance(PipelineState.RATE_CHECKED)
                request.state.gate_context = context
            return self.authorize_route(request, context, policy)

        return dependency


class GatekeeperMiddleware(BaseHTTPMiddleware):
    """Answers pre-flight requests and enforces rate limits before routing."""

    def __init__(self, app, pipeline: RequestPipeline, exempt_paths: Optional[List[str]] = None):
        super().__init__(app)
        self.pipeline = pipeline
        self.exempt_paths = set(exempt_paths or [])
        self.logger = get_logger("api.gatekeeper")

    async def dispatch(self, request: Request, call_next):
        if self.pipeline.is_preflight(request):
            return Response(status_code=200, headers=PREFLIGHT_HEADERS)

        if request.url.path in self.exempt_paths:
            return await call_next(request)

        try:
            context = await self.pipeline.admit(request)
        except AccessLayerException as exc:
            return error_response(exc)

        request.state.gate_context = context
        response = await call_next(request)

        for header, value in context.rate_limit.headers().items():
            response.headers[header] = value
        return response
