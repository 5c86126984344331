"""
Fixed-window rate limiter for the API service.

Two independent limits apply to every call: one keyed by caller IP and,
when an organization id is present, one keyed by organization. Windows
are fixed rather than sliding, so a caller can burst up to twice the
threshold across a window boundary.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..clock import SystemClock
from .store import CounterResult, RateLimitStore


@dataclass(frozen=True)
class RateLimitPolicy:
    """Window size and thresholds."""

    window_seconds: float = 15 * 60
    max_per_ip: int = 100
    max_per_org: int = 1000

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.max_per_ip < 1 or self.max_per_org < 1:
            raise ValueError("rate limit thresholds must be at least 1")


@dataclass(frozen=True)
class ScopeResult:
    """Counter state for one scope after an admission attempt."""

    scope: str
    key: str
    allowed: bool
    count: int
    limit: int
    reset_in_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class RateLimitDecision:
    """Allow, or deny with the seconds until the blocking window resets."""

    allowed: bool
    ip: ScopeResult
    org: Optional[ScopeResult] = None

    @property
    def denied_by(self) -> Optional[ScopeResult]:
        if not self.ip.allowed:
            return self.ip
        if self.org is not None and not self.org.allowed:
            return self.org
        return None

    @property
    def retry_after(self) -> Optional[int]:
        blocking = self.denied_by
        return blocking.reset_in_seconds if blocking else None

    def headers(self) -> Dict[str, str]:
        """Rate limit headers describing the IP counter."""
        return {
            "X-RateLimit-Limit": str(self.ip.limit),
            "X-RateLimit-Remaining": str(self.ip.remaining),
            "X-RateLimit-Reset": str(self.ip.reset_in_seconds),
        }


class FixedWindowRateLimiter:
    """Admits or rejects requests by IP and organization."""

    def __init__(
        self,
        store: RateLimitStore,
        policy: Optional[RateLimitPolicy] = None,
        clock=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.policy = policy or RateLimitPolicy()
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.logger = get_logger("api.rate_limiter")

    @staticmethod
    def ip_key(ip: str) -> str:
        return f"ip:{ip}"

    @staticmethod
    def org_key(organization_id: str) -> str:
        return f"org:{organization_id}"

    def _reset_in(self, result: CounterResult, now: float) -> int:
        remaining = self.policy.window_seconds - (now - result.window_start)
        return max(1, math.ceil(remaining))

    async def _check(self, scope: str, key: str, limit: int, now: float) -> ScopeResult:
        result = await self.store.hit(key, limit, self.policy.window_seconds, now)
        scope_result = ScopeResult(
            scope=scope,
            key=key,
            allowed=result.allowed,
            count=result.count,
            limit=limit,
            reset_in_seconds=self._reset_in(result, now),
        )
        if self.metrics:
            self.metrics.increment_counter(
                "rate_limit_decisions_total",
                scope=scope,
                decision="allow" if result.allowed else "deny",
            )
        return scope_result

    async def admit(self, ip: str, organization_id: Optional[str] = None) -> RateLimitDecision:
        """Evaluate the IP gate and the organization gate for one request.

        Both counters are always evaluated; a request denied by one scope
        still counts against (or resets) the other.
        """
        now = self.clock.now()

        ip_result = await self._check("ip", self.ip_key(ip), self.policy.max_per_ip, now)
        org_result = None
        if organization_id:
            org_result = await self._check(
                "org", self.org_key(organization_id), self.policy.max_per_org, now
            )

        decision = RateLimitDecision(
            allowed=ip_result.allowed and (org_result is None or org_result.allowed),
            ip=ip_result,
            org=org_result,
        )

        if not ip_result.allowed:
            self.logger.warning(
                "Rate limit exceeded for IP",
                ip=ip,
                count=ip_result.count,
                limit=ip_result.limit,
                retry_after=ip_result.reset_in_seconds,
            )
        if org_result is not None and not org_result.allowed:
            self.logger.warning(
                "Rate limit exceeded for organization",
                organization_id=organization_id,
                count=org_result.count,
                limit=org_result.limit,
                retry_after=org_result.reset_in_seconds,
            )

        return decision

    async def sweep(self) -> int:
        """Purge expired counters and refresh the tracked-keys gauge."""
        removed = await self.store.sweep(self.policy.window_seconds, self.clock.now())
        if self.metrics:
            self.metrics.set_gauge("rate_limit_tracked_keys", await self.store.size())
        if removed:
            self.logger.debug("Swept stale rate limit counters", removed=removed)
        return removed
