"""
Quota enforcement point for the Quota service.
"""

import math
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Request, Response

from shared.errors import RateLimitError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .tiers import QuotaTable, QuotaTier, RateLimitOptions
from .token_bucket import QuotaResult, TokenBucketRateLimiter


class QuotaGuard:
    """Application-wide FastAPI dependency enforcing per-route quotas.

    Routes are looked up by name in the route table; a route without an entry
    is not rate limited.
    """

    def __init__(
        self,
        rate_limiter: TokenBucketRateLimiter,
        quota_table: QuotaTable,
        routes: Optional[Dict[str, RateLimitOptions]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.rate_limiter = rate_limiter
        self.quota_table = quota_table
        self.routes: Dict[str, RateLimitOptions] = dict(routes or {})
        self.metrics = metrics
        self.logger = get_logger("quota.guard")
        self._resolved: Dict[str, QuotaTier] = quota_table.validate_routes(self.routes)

    async def __call__(self, request: Request, response: Response) -> None:
        route = request.scope.get("route")
        route_name = getattr(route, "name", None)
        tier = self._resolved.get(route_name)
        if tier is None:
            return

        level = self.routes[route_name].level or self.quota_table.default_level
        await self.enforce(request, response, tier, level)

    async def enforce(self, request: Request, response: Response, tier: QuotaTier, level: str) -> QuotaResult:
        """Spend one token for the caller, set headers and reject when denied."""
        tracker_key = self.get_tracker_key(request)
        result = await self.rate_limiter.check_quota(
            tracker_key,
            tier.limit,
            tier.window_ms,
            tier.burst,
        )

        headers = self.build_headers(tier.limit, result)
        for name, value in headers.items():
            response.headers[name] = value

        if self.metrics:
            self.metrics.record_quota_decision(level, result.allowed)

        if not result.allowed:
            retry_after_ms = result.retry_after_ms or result.reset_ms
            raise RateLimitError(
                details={
                    "limit": tier.limit,
                    "reset_ms": result.reset_ms,
                    "retry_after_ms": retry_after_ms,
                },
                retry_after_seconds=math.ceil(retry_after_ms / 1000),
                rate_limit_headers=headers,
            )

        return result

    @staticmethod
    def build_headers(limit: int, result: QuotaResult, now: Optional[float] = None) -> Dict[str, str]:
        """Rate limit response headers; the reset is ``now + reset_ms`` in ISO-8601 UTC."""
        now = time.time() if now is None else now
        reset_at = datetime.fromtimestamp(now + result.reset_ms / 1000, tz=timezone.utc)
        return {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": reset_at.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    @staticmethod
    def get_tracker_key(request: Request) -> str:
        """Authenticated user id first, then the caller's IP address."""
        user_info = getattr(request.state, "user_info", None)
        if isinstance(user_info, dict) and user_info.get("user_id"):
            return f"user:{user_info['user_id']}"

        forwarded_for = request.headers.get("X-Forwarded-For")
        if isinstance(forwarded_for, str) and forwarded_for:
            first = forwarded_for.split(",")[0].strip()
            if first:
                return f"ip:{first}"

        if request.client and request.client.host:
            return f"ip:{request.client.host}"

        return "ip:unknown"
