"""
API service for the ClientFlow gatekeeping layer.
"""

import asyncio
import contextlib
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ConfigurationError, InvalidTokenError, ValidationError
from shared.logging import request_id_var
from .adapters.business_client import BusinessApiClient
from .auth.gate import AuthorizationGate
from .auth.models import isoformat
from .auth.revocation import InMemoryTokenRevocationIndex, RedisTokenRevocationIndex, TokenRevocationIndex
from .auth.schemas import (
    RevokeRequest,
    RevokeResponse,
    TokenInfo,
    TokenInfoResponse,
    TokenRequest,
    TokenResponse,
    TokenValidationResponse,
)
from .auth.tokens import TokenService
from .clock import SystemClock
from .domain.pipeline import GatekeeperMiddleware, RequestContext, RequestPipeline, RoutePolicy
from .domain.tenancy import ORG_HEADER, ORG_QUERY_PARAM, TenancyResolver
from .ratelimit.limiter import FixedWindowRateLimiter, RateLimitPolicy
from .ratelimit.store import InMemoryRateLimitStore, RateLimitStore, RedisRateLimitStore

OPEN = RoutePolicy()
TENANT = RoutePolicy(tenant_scoped=True)
AUTHENTICATED = RoutePolicy(authenticated=True)

# Business-data routes forwarded upstream once admitted.
BUSINESS_ROUTES: List[Tuple[str, str, RoutePolicy]] = [
    ("GET", "/api/businesses", OPEN),
    ("GET", "/api/customers", OPEN),
    ("POST", "/api/customers", OPEN),
    ("POST", "/api/messages/outbound", RoutePolicy(tenant_scoped=True, required_permission="messages:send")),
    ("POST", "/api/automations/run", RoutePolicy(tenant_scoped=True, required_permission="automations:run")),
    ("POST", "/api/automations/sms_inbound", TENANT),
    ("POST", "/api/automations/email_inbound", TENANT),
    ("GET", "/api/appointments", TENANT),
    ("GET", "/api/sla/unanswered", TENANT),
]


class ApiService(BaseService):
    """API service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        clock=None,
        rate_limit_store: Optional[RateLimitStore] = None,
        revocation_index: Optional[TokenRevocationIndex] = None,
        business_client: Optional[BusinessApiClient] = None,
    ):
        self.clock = clock or SystemClock()
        self._rate_limit_store = rate_limit_store
        self._revocation_index = revocation_index
        self._business_client = business_client
        self._sweeper: Optional[asyncio.Task] = None

        config = config or get_config("api", 4000)
        super().__init__("api", config.port, config=config)

        self._setup_auth_routes()
        self._setup_business_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.api_service = self

    def _setup_components(self):
        """Build stores, limiter, token service and pipeline from configuration."""
        backend = self.config.rate_limit_backend.lower()
        if backend not in ("memory", "redis"):
            raise ConfigurationError(
                f"Unknown rate limit backend '{self.config.rate_limit_backend}'",
                details={"supported": ["memory", "redis"]},
            )

        if self._rate_limit_store is None:
            self._rate_limit_store = (
                RedisRateLimitStore(self.config.redis_url) if backend == "redis" else InMemoryRateLimitStore()
            )
        if self._revocation_index is None:
            self._revocation_index = (
                RedisTokenRevocationIndex(self.config.redis_url)
                if backend == "redis"
                else InMemoryTokenRevocationIndex()
            )

        self.rate_limit_store = self._rate_limit_store
        self.revocation_index = self._revocation_index

        self.rate_limiter = FixedWindowRateLimiter(
            self.rate_limit_store,
            RateLimitPolicy(
                window_seconds=self.config.rate_limit_window_seconds,
                max_per_ip=self.config.rate_limit_max_per_ip,
                max_per_org=self.config.rate_limit_max_per_org,
            ),
            clock=self.clock,
            metrics=self.metrics,
        )
        self.token_service = TokenService.from_config(
            self.config,
            self.revocation_index,
            clock=self.clock,
            metrics=self.metrics,
        )
        self.tenancy = TenancyResolver()
        self.gate = AuthorizationGate(self.token_service)
        self.pipeline = RequestPipeline(
            self.rate_limiter,
            self.tenancy,
            self.gate,
            trust_forwarded_headers=self.config.trust_forwarded_headers,
        )
        self.business_client = self._business_client or BusinessApiClient(
            self.config.business_api_url,
            timeout=self.config.business_api_timeout_seconds,
        )

    def _setup_middleware(self):
        """Install the gatekeeper innermost so CORS and request timing wrap it."""
        self.app.add_middleware(GatekeeperMiddleware, pipeline=self.pipeline, exempt_paths=["/metrics"])
        super()._setup_middleware()

    async def _on_startup(self):
        if self.config.sweep_interval_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop(self.config.sweep_interval_seconds))

    async def _on_shutdown(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.business_client.close()
        await self.rate_limit_store.close()
        await self.revocation_index.close()

    async def _sweep_loop(self, interval: float):
        """Periodically drop expired rate counters and token records."""
        while True:
            await asyncio.sleep(interval)
            await self.sweep_once()

    async def sweep_once(self) -> Dict[str, int]:
        try:
            counters = await self.rate_limiter.sweep()
            tokens = await self.token_service.purge_expired()
        except Exception as e:
            self.logger.error("Housekeeping sweep failed", error=str(e))
            return {"counters": 0, "tokens": 0}
        return {"counters": counters, "tokens": tokens}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check API dependencies."""
        return {
            "rate_limit_store": "ok" if await self.rate_limit_store.ping() else "error",
            "token_index": "ok" if await self.revocation_index.ping() else "error",
        }

    def _setup_auth_routes(self):
        """Set up token routes."""

        @self.app.get("/")
        async def root():
            """Service descriptor."""
            window_minutes = self.config.rate_limit_window_seconds // 60
            return {
                "name": "ClientFlow AI Suite API",
                "service": self.service_name,
                "version": "1.0.0",
                "authentication": {
                    "type": "Organization-based",
                    "header": ORG_HEADER,
                    "query_param": ORG_QUERY_PARAM,
                    "bearer": "Authorization: Bearer <token>",
                    "token_endpoint": "POST /auth/token",
                },
                "rate_limits": {
                    "per_ip": f"{self.config.rate_limit_max_per_ip} requests per {window_minutes} minutes",
                    "per_organization": f"{self.config.rate_limit_max_per_org} requests per {window_minutes} minutes",
                },
            }

        @self.app.post("/auth/token", response_model=TokenResponse)
        async def issue_token(
            payload: TokenRequest,
            context: RequestContext = Depends(self.pipeline.guard(TENANT)),
        ):
            """Issue a service token for the resolved organization."""
            if not payload.service_name:
                raise ValidationError(
                    "service_name is required",
                    error="Missing required fields",
                    required=["service_name"],
                )

            issued = await self.token_service.issue(
                context.organization_id,
                payload.service_name,
                permissions=payload.permissions,
                ttl_seconds=payload.expires_in,
            )
            return TokenResponse(
                token=issued.token,
                expires_at=isoformat(issued.expires_at),
                organization_id=issued.claims.organization_id,
                permissions=list(issued.claims.permissions),
            )

        @self.app.get("/auth/validate", response_model=TokenValidationResponse)
        async def validate_token(context: RequestContext = Depends(self.pipeline.guard(AUTHENTICATED))):
            """Validate the presented token against the revocation index."""
            record = await self.token_service.lookup(context.auth.token)
            if record is None:
                raise InvalidTokenError("Token not found or expired")

            claims = context.auth.claims
            return TokenValidationResponse(
                valid=True,
                organization_id=claims.organization_id,
                permissions=list(claims.permissions),
                expires_at=isoformat(record.claims.expires_at),
                service_name=claims.service_name,
            )

        @self.app.post("/auth/revoke", response_model=RevokeResponse)
        async def revoke_token(
            payload: RevokeRequest,
            context: RequestContext = Depends(self.pipeline.guard(AUTHENTICATED)),
        ):
            """Revoke a token belonging to the caller's organization."""
            if not payload.token:
                raise ValidationError(
                    "Token required for revocation",
                    error="Token required for revocation",
                    required=["token"],
                )

            await self.token_service.revoke(payload.token, organization_id=context.organization_id)
            return RevokeResponse()

        @self.app.get("/auth/info", response_model=TokenInfoResponse)
        async def token_info(context: RequestContext = Depends(self.pipeline.guard(AUTHENTICATED))):
            """Decoded claims of the presented token, for debugging."""
            claims = context.auth.claims
            return TokenInfoResponse(
                user=TokenInfo(
                    organization_id=claims.organization_id,
                    service_name=claims.service_name,
                    permissions=list(claims.permissions),
                    issued_at=isoformat(claims.issued_at),
                    expires_at=isoformat(claims.expires_at),
                )
            )

    def _setup_business_routes(self):
        """Register forwarding routes for the business-data API."""
        for method, path, policy in BUSINESS_ROUTES:
            self.app.add_api_route(
                path,
                self._make_forwarder(path, policy),
                methods=[method],
                name=f"{method.lower()}_{path.strip('/').replace('/', '_')}",
            )

    def _make_forwarder(self, path: str, policy: RoutePolicy):
        async def forward(request: Request, context: RequestContext = Depends(self.pipeline.guard(policy))):
            body: Any = None
            if request.method in ("POST", "PUT", "PATCH") and await request.body():
                try:
                    body = await request.json()
                except ValueError:
                    raise ValidationError("Request body must be valid JSON")

            params = {
                key: value for key, value in request.query_params.items() if key != ORG_QUERY_PARAM
            }
            result = await self.business_client.forward(
                request.method,
                path,
                organization_id=context.organization_id or self.tenancy.peek(request),
                params=params,
                body=body,
                request_id=request_id_var.get(),
            )
            return JSONResponse(status_code=result.status_code, content=result.body)

        return forward


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = ApiService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = ApiService()
    service.run()
