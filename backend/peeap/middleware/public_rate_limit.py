from __future__ import annotations

import time
from dataclasses import dataclass

from cachetools import TTLCache
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..problem_details import problem_response
from ..settings import settings

# Signed webhooks (/api/webhooks/) are authenticated and not limited here.
_LIMITED_PREFIXES = ("/api/public/",)
_WINDOW_S = 60.0
_MAX_TRACKED_CLIENTS = 10_000


@dataclass
class _Bucket:
    window_start: float
    count: int


def _new_buckets() -> TTLCache[str, _Bucket]:
    # An entry lives exactly one window; when full, the least recently used client is dropped.
    return TTLCache(maxsize=_MAX_TRACKED_CLIENTS, ttl=_WINDOW_S)


class PublicRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window, in-memory (per process) limit for unauthenticated endpoints:
    hosted checkout and invoice payment links.
    """

    _buckets: TTLCache[str, _Bucket] = _new_buckets()

    def _client_key(self, request: Request) -> str:
        # The load balancer appends the peer it saw, so only the last
        # X-Forwarded-For entry is trustworthy; earlier ones are client-supplied.
        xff = (request.headers.get("x-forwarded-for") or "").strip()
        ip = xff.split(",")[-1].strip() if xff else ""
        if not ip and request.client:
            ip = request.client.host or ""
        return ip or "unknown"

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not path.startswith(_LIMITED_PREFIXES):
            return await call_next(request)

        rpm = max(1, min(6000, int(settings.public_rate_limit_rpm or 120)))
        key = self._client_key(request)
        now = time.time()

        b = self._buckets.get(key)
        if not b or (now - b.window_start) >= _WINDOW_S:
            b = _Bucket(window_start=now, count=0)
            self._buckets[key] = b

        b.count += 1
        if b.count > rpm:
            retry_after = int(max(1.0, _WINDOW_S - (now - b.window_start)))
            return problem_response(
                request=request,
                status_code=429,
                detail="Too many requests",
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)
