"""Simple in-memory fixed-window rate limiting middleware."""

import os
import time
from typing import Callable, Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from creditgate.core.errors import RateLimitError, app_error_handler
from creditgate.core.logging import get_request_id


WINDOW_SECONDS = 60

PREFIX_MAP = {
    "subscription": ["/subscription"],
    "credits": ["/user/credits"],
    "webhooks": ["/webhooks"],
}


def _parse_limit(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        limit = int(value)
        return limit if limit > 0 else None
    except (TypeError, ValueError):
        return None


class FixedWindowLimiter:
    def __init__(self, limit_per_minute: int, time_fn: Callable[[], float]):
        self.limit = limit_per_minute
        self.time_fn = time_fn
        self.windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        now = self.time_fn()
        window_start, count = self.windows.get(key, (now, 0))
        if now - window_start >= WINDOW_SECONDS:
            window_start, count = now, 0
        if count >= self.limit:
            self.windows[key] = (window_start, count)
            return False
        self.windows[key] = (window_start, count + 1)
        return True

    def cleanup(self) -> int:
        """Drop windows that have fully elapsed. Returns the number removed."""
        now = self.time_fn()
        expired = [key for key, (start, _) in self.windows.items() if now - start >= WINDOW_SECONDS]
        for key in expired:
            self.windows.pop(key, None)
        return len(expired)


class RateLimiterRegistry:
    """Per-category limiters shared between the middleware and the cleanup task."""

    def __init__(self, limits: Dict[str, Optional[int]], time_fn: Optional[Callable[[], float]] = None):
        self.time_fn = time_fn or time.monotonic
        self.limiters: Dict[str, FixedWindowLimiter] = {}
        for name, limit in limits.items():
            if limit:
                self.limiters[name] = FixedWindowLimiter(limit, self.time_fn)

    def get(self, category: Optional[str]) -> Optional[FixedWindowLimiter]:
        if category is None:
            return None
        return self.limiters.get(category)

    def cleanup(self) -> int:
        return sum(limiter.cleanup() for limiter in self.limiters.values())


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, registry: RateLimiterRegistry):
        super().__init__(app)
        self.registry = registry

    def _category_for_path(self, path: str) -> Optional[str]:
        for category, prefixes in PREFIX_MAP.items():
            if any(path.startswith(prefix) for prefix in prefixes):
                return category
        return None

    def _client_key(self, request: Request, category: str) -> str:
        user_id = request.headers.get("x-user-id")
        if user_id:
            return f"{category}:user:{user_id}"
        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"{category}:ip:{ip}"

    async def dispatch(self, request: Request, call_next):
        category = self._category_for_path(request.url.path)
        limiter = self.registry.get(category)

        # Fail-open when limit not configured or category not matched
        if not limiter:
            return await call_next(request)

        key = self._client_key(request, category)
        if not limiter.allow(key):
            rid = getattr(request.state, "request_id", None) or get_request_id()
            return await app_error_handler(
                request,
                RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
            )

        return await call_next(request)


def build_rate_limit_config() -> Dict[str, Optional[int]]:
    return {
        "subscription": _parse_limit(os.getenv("SUBSCRIPTION_RATE_LIMIT", "30")),
        "credits": _parse_limit(os.getenv("CREDITS_RATE_LIMIT", "120")),
        "webhooks": _parse_limit(os.getenv("WEBHOOKS_RATE_LIMIT", "600")),
    }
