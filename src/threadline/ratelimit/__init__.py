"""Per-credential rate limiting."""

from threadline.ratelimit.limiter import Decision, RateLimiter, Window

__all__ = ["Decision", "RateLimiter", "Window"]
