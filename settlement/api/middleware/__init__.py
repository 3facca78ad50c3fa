"""API middleware."""

from settlement.api.middleware.rate_limit import RateLimitMiddleware

__all__ = ["RateLimitMiddleware"]
