"""Rate limiting middleware."""

import hashlib
import time
from enum import StrEnum

import redis.asyncio as redis
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from settlement.config import Settings, get_settings

logger = structlog.get_logger()


class TrafficClass(StrEnum):
    """Buckets that share one request budget per caller."""

    GATEWAY_WEBHOOK = "webhook"
    SETTLEMENT_CREATE = "settle"
    OPERATOR_ACTION = "operator"
    READ = "read"


def classify(method: str, path: str) -> TrafficClass:
    """Map a request onto its traffic class."""
    path = path.rstrip("/")
    if path.endswith("/webhooks/gateway"):
        return TrafficClass.GATEWAY_WEBHOOK
    if method == "POST" and path.endswith(("/settlements", "/subscriptions")):
        return TrafficClass.SETTLEMENT_CREATE
    if method != "GET" and "/admin/" in path:
        return TrafficClass.OPERATOR_ACTION
    return TrafficClass.READ


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limiting using Redis.

    Gateway webhooks get a large budget so redeliveries are never dropped;
    settlement creation and operator actions such as a manual transfer pass
    are kept small. Counters are per traffic class, so varying a path
    parameter does not open a fresh window.
    """

    def __init__(self, app, settings: Settings | None = None, redis_url: str | None = None):
        super().__init__(app)
        self.settings = settings or get_settings()
        self.redis_url = redis_url or self.settings.redis_url
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def dispatch(self, request: Request, call_next):
        """Process request with rate limiting."""
        # Skip rate limiting for health checks
        if request.url.path.startswith("/health"):
            return await call_next(request)

        traffic = classify(request.method, request.url.path)
        caller = self._get_identifier(request)
        limit = self._get_limit(traffic)

        try:
            count, reset_at = await self._hit(traffic, caller)
        except (redis.RedisError, OSError) as e:
            # Settlement traffic must not stop because Redis did
            logger.warning("rate_limit_check_failed", traffic=traffic.value, error=str(e))
            return await call_next(request)

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, limit - count)),
            "X-RateLimit-Reset": str(reset_at),
        }
        if count > limit:
            logger.warning(
                "rate_limit_exceeded",
                caller=caller,
                traffic=traffic.value,
                path=request.url.path,
            )
            headers["Retry-After"] = str(max(reset_at - int(time.time()), 0))
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

    def _get_identifier(self, request: Request) -> str:
        """API key digest for operators and clients, source IP for the gateway."""
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            digest = hashlib.sha256(auth[7:].encode()).hexdigest()[:16]
            return f"key:{digest}"

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"

        return f"ip:{request.client.host if request.client else 'unknown'}"

    def _get_limit(self, traffic: TrafficClass) -> int:
        """Requests allowed per window for a traffic class."""
        return {
            TrafficClass.GATEWAY_WEBHOOK: self.settings.rate_limit_webhooks,
            TrafficClass.SETTLEMENT_CREATE: self.settings.rate_limit_settlements,
            TrafficClass.OPERATOR_ACTION: self.settings.rate_limit_operator,
        }.get(traffic, self.settings.rate_limit_default)

    async def _hit(self, traffic: TrafficClass, caller: str) -> tuple[int, int]:
        """
        Count one request in the caller's current window.

        Returns: (requests_in_window, reset_timestamp)
        """
        r = await self.get_redis()
        window = self.settings.rate_limit_window_seconds

        now = int(time.time())
        window_start = now - (now % window)
        key = f"ratelimit:{traffic.value}:{caller}:{window_start}"

        count = await r.incr(key)
        if count == 1:
            await r.expire(key, window + 1)

        return count, window_start + window
