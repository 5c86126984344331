"""
API Service package for the ClientFlow gatekeeping layer.

Every inbound call passes through the gatekeeper before reaching the
business-data API:
- Pre-flight: OPTIONS requests are answered immediately
- Rate limiting: fixed-window counters per caller IP and per organization
- Tenancy: the organization id is resolved from header or query
- Authorization: signed bearer tokens carrying a permission set

Structure:
- app.main: FastAPI app, auth routes, forwarding routes and wiring.
- app.ratelimit: Counter stores and the fixed-window limiter.
- app.auth: Token service, revocation index and authorization gate.
- app.domain: Tenancy resolution and the request pipeline.
- app.adapters: HTTP client for the business-data API.
"""
