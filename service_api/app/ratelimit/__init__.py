"""
Rate limiting package for the API service.

Holds the fixed-window limiter and the counter stores it runs on
(in-process or Redis-backed) that enforce per-IP and per-organization
request budgets.
"""

from .limiter import FixedWindowRateLimiter, RateLimitDecision, RateLimitPolicy, ScopeResult
from .store import (
    CounterResult,
    InMemoryRateLimitStore,
    RateCounter,
    RateLimitStore,
    RedisRateLimitStore,
)

__all__ = [
    "CounterResult",
    "FixedWindowRateLimiter",
    "InMemoryRateLimitStore",
    "RateCounter",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimitStore",
    "RedisRateLimitStore",
    "ScopeResult",
]
