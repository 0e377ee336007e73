"""
Quota service for the Quota Access Layer.
"""

from typing import Any, Dict, List, Optional

from fastapi import Depends, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .domain.auth_middleware import AuthMiddleware
from .ratelimit.guard import QuotaGuard
from .ratelimit.tiers import QuotaTable, RateLimitOptions, load_quota_levels
from .ratelimit.token_bucket import TokenBucketRateLimiter


SERVICE_NAME = "quota"
SERVICE_PORT = 8020

# Route name -> quota options. Routes not listed here are not rate limited.
# Health pins burst to its limit; the free tier's burst of 15 would otherwise
# admit 15 health checks at once instead of 2 per minute.
ROUTE_QUOTAS: Dict[str, RateLimitOptions] = {
    "health": RateLimitOptions(level="free", limit=2, window_ms=60_000, burst=2),
    "info": RateLimitOptions(level="standard"),
}


class QuotaService(BaseService):
    """Quota service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        route_quotas: Optional[Dict[str, RateLimitOptions]] = None,
        redis_client: Optional[Any] = None,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.quota_table = QuotaTable(load_quota_levels(self.config.tiers_file))
        self.rate_limiter = TokenBucketRateLimiter(
            self.config.redis_url,
            fail_open=self.config.fail_open,
            socket_timeout=self.config.redis_socket_timeout,
            metrics=self.metrics,
            client=redis_client,
        )
        self.quota_guard = QuotaGuard(
            self.rate_limiter,
            self.quota_table,
            routes=ROUTE_QUOTAS if route_quotas is None else route_quotas,
            metrics=self.metrics,
        )
        self.auth_middleware = AuthMiddleware(self.config.jwt_secret, self.config.jwt_algorithm)

        @self.app.middleware("http")
        async def identify_caller(request: Request, call_next):
            self.auth_middleware.identify(request)
            return await call_next(request)

        self._setup_quota_routes()

        self.app.state.quota_service = self

    def _app_dependencies(self) -> List[Any]:
        return [Depends(self._enforce_quota)]

    async def _enforce_quota(self, request: Request, response: Response) -> None:
        await self.quota_guard(request, response)

    async def on_startup(self):
        await self.rate_limiter.start()

    async def on_shutdown(self):
        await self.rate_limiter.stop()

    async def _check_dependencies(self) -> Dict[str, str]:
        return {"redis": "ok" if await self.rate_limiter.ping() else "error"}

    def _setup_quota_routes(self):
        """Set up quota-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Quota Access Layer - Quota Service",
                "version": "1.0.0",
                "fail_open": self.rate_limiter.fail_open,
            }

        @self.app.get("/info", name="info")
        async def info():
            """Service description."""
            return {
                "name": "quota-access-layer",
                "version": "1.0.0",
                "description": "Token-bucket quota enforcement over a shared Redis store",
                "modules": ["ratelimit", "auth", "metrics"],
            }

        @self.app.get("/api/v1/quota/tiers")
        async def list_tiers():
            """Configured quota tiers."""
            return {
                "default": self.quota_table.default_level,
                "tiers": {level: tier.model_dump() for level, tier in self.quota_table.levels.items()},
            }

        @self.app.get("/api/v1/quota/usage")
        async def get_usage(user_info: Dict[str, Any] = Depends(self.auth_middleware.require_user)):
            """Caller's tier and remaining budget, without spending a token."""
            level = user_info.get("tier") or self.config.default_user_tier
            if level not in self.quota_table.levels:
                level = self.quota_table.default_level
            tier = self.quota_table.get(level)

            status = await self.rate_limiter.check_quota(
                f"user:{user_info['user_id']}",
                tier.limit,
                tier.window_ms,
                tier.burst,
                requested=0,
            )

            return {
                "tier": level,
                "config": tier.model_dump(),
                "remaining": status.remaining,
                "reset_ms": status.reset_ms,
            }


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = QuotaService(config)
    return service.app


if __name__ == "__main__":
    service = QuotaService()
    service.run()
