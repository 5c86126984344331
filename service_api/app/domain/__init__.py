"""
Domain utilities for the API service.

Includes the tenancy resolver and the request pipeline that sequences the
gatekeeping steps; neither belongs to adapters or transport-specific layers.
"""

from .pipeline import GatekeeperMiddleware, PipelineState, RequestContext, RequestPipeline, RoutePolicy
from .tenancy import TenancyResolver

__all__ = [
    "GatekeeperMiddleware",
    "PipelineState",
    "RequestContext",
    "RequestPipeline",
    "RoutePolicy",
    "TenancyResolver",
]
