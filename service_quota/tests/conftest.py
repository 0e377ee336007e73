"""
Shared fixtures for Quota service tests.
"""

import fakeredis
import pytest

from service_quota.app.ratelimit.token_bucket import TokenBucketRateLimiter
from shared.test_helpers import ManualClock, SampleUser, TokenFactory


@pytest.fixture
def clock():
    """Clock frozen at t=0 ms."""
    return ManualClock()


@pytest.fixture
def bucket_store():
    """Lua-capable Redis fake with its own server, so the bucket script runs for real."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store_limiter(bucket_store, clock):
    """Limiter evaluating against the fake store with a manual clock."""
    return TokenBucketRateLimiter("redis://localhost:6379/0", clock=clock, client=bucket_store)


@pytest.fixture
def token_factory():
    return TokenFactory(secret="quota-test-secret-0123456789abcdef")


@pytest.fixture
def sample_user():
    return SampleUser(user_id="user-123", tenant_id="tenant-1", tier="premium")
