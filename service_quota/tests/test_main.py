"""
Unit tests for Quota main service.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from service_quota.app.main import QuotaService, create_app
from shared.config import get_config
from shared.test_helpers import InMemoryQuotaRedis, ManualClock, SampleUser, TokenFactory

SECRET = "quota-test-secret-0123456789abcdef"


def build_service(redis_client=None, **overrides) -> QuotaService:
    config = get_config("quota", 8020, jwt_secret=SECRET, **overrides)
    return QuotaService(config, redis_client=redis_client or InMemoryQuotaRedis())


def broken_redis():
    """Redis client whose script evaluation always fails."""
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    client.aclose = AsyncMock()
    client.register_script.return_value = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    return client


class TestQuotaService:
    """Test cases for QuotaService."""

    @pytest.fixture
    def bucket_store(self):
        return InMemoryQuotaRedis()

    @pytest.fixture
    def quota_service(self, bucket_store):
        """Create QuotaService instance backed by the in-memory store and a frozen clock."""
        service = build_service(bucket_store)
        service.rate_limiter._clock = ManualClock(1_700_000_000_000)
        return service

    @pytest.fixture
    def client(self, quota_service):
        """Create test client."""
        with TestClient(quota_service.app) as test_client:
            yield test_client

    @pytest.fixture
    def tokens(self):
        return TokenFactory(secret=SECRET)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "quota"
        assert data["fail_open"] is True

    def test_root_is_not_rate_limited(self, client):
        """Test routes outside the route table carry no quota headers."""
        for _ in range(5):
            response = client.get("/")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_health_endpoint(self, client):
        """Test health endpoint reports the bucket store."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "quota"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"redis": "ok"}

    def test_health_is_limited_to_two_per_minute(self, client):
        """Test the health route override of 2 requests per minute."""
        first = client.get("/health")
        second = client.get("/health")
        third = client.get("/health")

        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.status_code == 200
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert third.status_code == 429
        assert third.headers["Retry-After"] == "30"

    def test_info_denied_after_burst(self, client):
        """Test the info route rejects callers past the standard burst."""
        statuses = [client.get("/info").status_code for _ in range(121)]

        assert statuses[:120] == [200] * 120
        assert statuses[120] == 429

    def test_rate_limited_response(self, client):
        """Test the 429 body and headers."""
        for _ in range(120):
            client.get("/info")

        response = client.get("/info")

        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "RATE_LIMIT_ERROR"
        assert body["details"]["limit"] == 100
        assert body["details"]["reset_ms"] == 60000
        assert body["details"]["retry_after_ms"] == 600
        assert response.headers["Retry-After"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Limit"] == "100"

    def test_forwarded_callers_are_tracked_separately(self, client, bucket_store):
        """Test the first forwarded-for address keys the bucket."""
        client.get("/info", headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})
        client.get("/info", headers={"X-Forwarded-For": "198.51.100.8"})

        assert "quota:ip:198.51.100.7" in bucket_store.buckets
        assert "quota:ip:198.51.100.8" in bucket_store.buckets

    def test_authenticated_caller_tracked_by_user(self, client, bucket_store, tokens):
        """Test bearer tokens switch tracking from IP to user id."""
        token = tokens.issue(SampleUser(user_id="user-123", tenant_id="tenant-1"))

        response = client.get("/info", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert "quota:user:user-123" in bucket_store.buckets

    def test_tiers_endpoint(self, client):
        """Test the tier table listing."""
        response = client.get("/api/v1/quota/tiers")
        assert response.status_code == 200
        data = response.json()
        assert data["default"] == "free"
        assert data["tiers"]["premium"] == {
            "name": "Premium Tier",
            "limit": 1000,
            "window_ms": 60000,
            "burst": 1200,
        }

    def test_usage_requires_authentication(self, client):
        """Test the usage endpoint rejects anonymous callers."""
        response = client.get("/api/v1/quota/usage")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_usage_reports_tier_without_spending(self, client, tokens):
        """Test usage introspection uses the token tier and costs nothing."""
        token = tokens.issue(SampleUser(user_id="user-7", tenant_id="tenant-1", tier="premium"))
        headers = {"Authorization": f"Bearer {token}"}

        first = client.get("/api/v1/quota/usage", headers=headers).json()
        second = client.get("/api/v1/quota/usage", headers=headers).json()

        assert first["tier"] == "premium"
        assert first["config"]["limit"] == 1000
        assert first["remaining"] == 1200
        assert first["reset_ms"] == 60000
        assert second["remaining"] == 1200

    def test_usage_defaults(self, client, tokens):
        """Test missing tiers use the standard tier and unknown tiers the default."""
        no_tier = tokens.issue(SampleUser(user_id="user-8", tenant_id="tenant-1"))
        unknown_tier = tokens.issue(SampleUser(user_id="user-9", tenant_id="tenant-1", tier="platinum"))

        standard = client.get("/api/v1/quota/usage", headers={"Authorization": f"Bearer {no_tier}"}).json()
        fallback = client.get("/api/v1/quota/usage", headers={"Authorization": f"Bearer {unknown_tier}"}).json()

        assert standard["tier"] == "standard"
        assert standard["remaining"] == 120
        assert fallback["tier"] == "free"
        assert fallback["remaining"] == 15

    def test_request_id_is_echoed(self, client):
        """Test request ids are returned to the caller."""
        response = client.get("/", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_metrics_endpoint(self, client):
        """Test quota decisions are exported."""
        client.get("/info")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'quota_decisions_total{level="standard",decision="allowed"} 1.0' in response.text

    def test_store_closed_on_shutdown(self, quota_service, bucket_store):
        """Test the lifespan closes the store client."""
        with TestClient(quota_service.app):
            pass

        assert bucket_store.closed is True


class TestStoreFailurePolicy:
    """Test cases for the fail-open / fail-closed switch."""

    def test_fail_open_allows_requests(self):
        """Test an unreachable store lets traffic through."""
        service = build_service(broken_redis())

        with TestClient(service.app) as client:
            response = client.get("/info")
            health = client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert health.json()["status"] == "degraded"

    def test_fail_closed_rejects_requests(self):
        """Test fail-closed deployments reject while the store is down."""
        service = build_service(broken_redis(), fail_open=False)

        with TestClient(service.app) as client:
            response = client.get("/info")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"


def test_create_app():
    """Test the application factory."""
    app = create_app(get_config("quota", 8020, jwt_secret=SECRET))
    assert app.state.quota_service.service_name == "quota"
