import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


def client_ip(request: Request, proxy_hops: int = 1) -> Optional[str]:
    """
    Resolve the caller IP behind ``proxy_hops`` trusted reverse proxies.

    Each trusted proxy appends the address it received the request from to
    ``X-Forwarded-For``, so the caller is the entry ``proxy_hops`` places
    from the right. Entries further left are client-supplied and ignored.
    With ``proxy_hops`` set to 0 the header is not consulted at all.
    """
    if proxy_hops > 0:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return hops[max(len(hops) - proxy_hops, 0)]
    return request.client.host if request.client else None


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per IP within a time window.
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 900, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}

    def is_allowed(self, identifier: str) -> bool:
        now = self._clock()
        count, start_time = self.requests.get(identifier, (0, now))

        if now - start_time >= self.window_seconds:
            self.requests[identifier] = (1, now)
            return True

        if count >= self.max_requests:
            return False

        self.requests[identifier] = (count + 1, start_time)
        return True

    def cleanup(self):
        """Drop expired windows to keep memory bounded."""
        now = self._clock()
        keys_to_delete = [k for k, v in self.requests.items() if now - v[1] >= self.window_seconds]
        for k in keys_to_delete:
            del self.requests[k]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP request limit for every path under ``path_prefix``."""

    def __init__(self, app, limiter: RateLimiter, path_prefix: str = "/pdf", proxy_hops: int = 1):
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix
        self.proxy_hops = proxy_hops

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        identifier = client_ip(request, self.proxy_hops) or "unknown"
        if not self.limiter.is_allowed(identifier):
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests from this IP, please try again later."},
            )
        if len(self.limiter.requests) > 10_000:
            self.limiter.cleanup()
        return await call_next(request)
