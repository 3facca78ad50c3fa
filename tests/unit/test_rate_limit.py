"""Unit tests for the rate limiting middleware."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from settlement.api.middleware.rate_limit import RateLimitMiddleware, TrafficClass, classify
from settlement.config import Settings


def _settings(**overrides) -> Settings:
    values = {
        "rate_limit_enabled": True,
        "rate_limit_window_seconds": 60,
        "rate_limit_webhooks": 3000,
        "rate_limit_settlements": 2,
        "rate_limit_operator": 5,
        "rate_limit_default": 1000,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _app(settings: Settings) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, settings=settings)

    @app.post("/api/v1/settlements")
    async def settle():
        return {"ok": True}

    @app.get("/api/v1/payments/{payment_id}")
    async def payment(payment_id: str):
        return {"id": payment_id}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


class FakeRedis:
    """Counts INCRs per key like Redis does."""

    def __init__(self):
        self.counts: dict[str, int] = {}
        self.expire = AsyncMock()

    async def incr(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]


class TestClassify:
    """Tests for traffic classification."""

    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("POST", "/api/v1/webhooks/gateway", TrafficClass.GATEWAY_WEBHOOK),
            ("POST", "/api/v1/settlements", TrafficClass.SETTLEMENT_CREATE),
            ("POST", "/api/v1/subscriptions/", TrafficClass.SETTLEMENT_CREATE),
            ("POST", "/api/v1/admin/transfers/run", TrafficClass.OPERATOR_ACTION),
            ("POST", "/api/v1/admin/alerts/a1/resolve", TrafficClass.OPERATOR_ACTION),
            ("GET", "/api/v1/admin/alerts", TrafficClass.READ),
            ("GET", "/api/v1/payments/p1", TrafficClass.READ),
        ],
    )
    def test_classify(self, method, path, expected):
        assert classify(method, path) == expected


class TestRateLimitMiddleware:
    """Tests for RateLimitMiddleware."""

    def test_limits_per_traffic_class(self):
        middleware = RateLimitMiddleware(FastAPI(), settings=_settings())

        assert middleware._get_limit(TrafficClass.GATEWAY_WEBHOOK) == 3000
        assert middleware._get_limit(TrafficClass.SETTLEMENT_CREATE) == 2
        assert middleware._get_limit(TrafficClass.OPERATOR_ACTION) == 5
        assert middleware._get_limit(TrafficClass.READ) == 1000

    def test_identifier_is_key_digest(self):
        middleware = RateLimitMiddleware(FastAPI(), settings=_settings())

        class Req:
            client = None

            def __init__(self, key):
                self.headers = {"Authorization": f"Bearer {key}"}

        first = middleware._get_identifier(Req("sk_live_aaaaaaaaaaaaaaaa1"))
        second = middleware._get_identifier(Req("sk_live_aaaaaaaaaaaaaaaa2"))

        assert first.startswith("key:")
        assert first != second
        assert "sk_live" not in first

    def test_identifier_falls_back_to_forwarded_ip(self):
        middleware = RateLimitMiddleware(FastAPI(), settings=_settings())

        class Req:
            headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
            client = None

        assert middleware._get_identifier(Req()) == "ip:203.0.113.9"

    @pytest.mark.asyncio
    async def test_path_parameters_share_a_window(self):
        redis = FakeRedis()
        app = _app(_settings(rate_limit_default=2))

        with patch.object(RateLimitMiddleware, "get_redis", new=AsyncMock(return_value=redis)):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                responses = [await client.get(f"/api/v1/payments/p{i}") for i in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 429]
        assert len(redis.counts) == 1

    @pytest.mark.asyncio
    async def test_blocks_after_limit(self):
        redis = FakeRedis()
        app = _app(_settings())

        with patch.object(RateLimitMiddleware, "get_redis", new=AsyncMock(return_value=redis)):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                first = await client.post("/api/v1/settlements")
                second = await client.post("/api/v1/settlements")
                third = await client.post("/api/v1/settlements")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.status_code == 200
        assert third.status_code == 429
        assert third.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_fails_open_when_redis_is_down(self):
        app = _app(_settings())
        broken = AsyncMock(side_effect=ConnectionError("redis down"))

        with patch.object(RateLimitMiddleware, "get_redis", new=broken):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.post("/api/v1/settlements")

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_health_is_not_limited(self):
        app = _app(_settings())
        get_redis = AsyncMock()

        with patch.object(RateLimitMiddleware, "get_redis", new=get_redis):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/health")

        assert response.status_code == 200
        get_redis.assert_not_called()
