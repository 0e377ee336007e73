"""
Rate limiting package for the Quota service.

Holds the Redis token-bucket evaluator, the quota tier table and the
enforcement dependency that applies per-route quotas to callers.
"""

from .guard import QuotaGuard
from .tiers import DEFAULT_QUOTA, QUOTA_LEVELS, QuotaTable, QuotaTier, RateLimitOptions, load_quota_levels
from .token_bucket import QuotaResult, TokenBucketRateLimiter

__all__ = [
    "DEFAULT_QUOTA",
    "QUOTA_LEVELS",
    "QuotaGuard",
    "QuotaResult",
    "QuotaTable",
    "QuotaTier",
    "RateLimitOptions",
    "TokenBucketRateLimiter",
    "load_quota_levels",
]
