"""In-memory sliding-window rate limiter for the sync API.

Every request counts against its caller IP.  Sync requests also count
against the client identifier in the path, so one installation cannot
spread its traffic over several addresses.  The path id is chosen by the
caller, so it only ever adds a limit on top of the IP one.  Sufficient for
single-instance deployments.
"""

from __future__ import annotations

import re
import time
from collections import defaultdict
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from diacare.config import Settings, get_settings
from diacare.models.sync import CLIENT_ID_PATTERN

_SYNC_PATH_RE = re.compile(r"/sync/([^/]+)")
_CLIENT_ID_RE = re.compile(CLIENT_ID_PATTERN)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window rate limiter, plus a per-client window on sync paths."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._max_requests = s.rate_limit_per_minute
        self._window_seconds = 60
        # bucket key -> request timestamps inside the window
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._last_sweep = time.monotonic()

    def _buckets(self, request: Request) -> list[str]:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            keys = [f"ip:{forwarded.split(',')[0].strip()}"]
        else:
            keys = [f"ip:{request.client.host if request.client else 'unknown'}"]

        match = _SYNC_PATH_RE.search(request.url.path)
        if match and _CLIENT_ID_RE.fullmatch(match.group(1)):
            keys.append(f"client:{match.group(1)}")
        return keys

    def _sweep(self, now: float) -> None:
        # Drop buckets that went quiet, at most once per window
        if now - self._last_sweep < self._window_seconds:
            return
        self._last_sweep = now
        for key in list(self._requests):
            self._cleanup(key, now)

    def _cleanup(self, key: str, now: float) -> None:
        cutoff = now - self._window_seconds
        recent = [t for t in self._requests.get(key, ()) if t > cutoff]
        if recent:
            self._requests[key] = recent
        else:
            self._requests.pop(key, None)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        keys = self._buckets(request)
        now = time.monotonic()
        self._sweep(now)
        for key in keys:
            self._cleanup(key, now)

        full = [key for key in keys if len(self._requests[key]) >= self._max_requests]
        if full:
            oldest = min(self._requests[key][0] for key in full)
            retry_after = int(self._window_seconds - (now - oldest))
            return Response(
                content='{"detail":"Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(max(retry_after, 1))},
            )

        for key in keys:
            self._requests[key].append(now)

        response = await call_next(request)

        remaining = self._max_requests - max(len(self._requests[key]) for key in keys)
        response.headers["X-RateLimit-Limit"] = str(self._max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(remaining, 0))

        return response
