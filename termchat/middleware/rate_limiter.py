"""In-memory per-IP rate limiting.

Each RequestTracker keeps a sliding window of request timestamps per client
address. The middleware holds two trackers: one for all API traffic and a
stricter one for chat submissions.
"""

import logging
import time
from collections import defaultdict
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 300     # clean stale entries every 5 minutes
CHAT_PATH = "/api/v1/chat"


class RequestTracker:
    """Sliding window counter keyed by client address."""

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._request_log: dict[str, list[float]] = defaultdict(list)
        self._last_cleanup = 0.0

    def _cleanup_stale(self, now: float) -> None:
        """Remove entries older than 2x the window to bound memory."""
        if now - self._last_cleanup < CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        cutoff = now - self.window * 2
        stale = [ip for ip, ts in self._request_log.items() if not ts or ts[-1] < cutoff]
        for ip in stale:
            del self._request_log[ip]

    def hit(self, key: str) -> bool:
        """Record a request; False when *key* is over its limit."""
        now = self._clock()
        self._cleanup_stale(now)
        cutoff = now - self.window
        timestamps = [t for t in self._request_log[key] if t > cutoff]
        if len(timestamps) >= self.limit:
            self._request_log[key] = timestamps
            return False
        timestamps.append(now)
        self._request_log[key] = timestamps
        return True


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        tracker: RequestTracker,
        chat_tracker: Optional[RequestTracker] = None,
    ):
        super().__init__(app)
        self.tracker = tracker
        self.chat_tracker = chat_tracker

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/api/"):
            return await call_next(request)

        ip = _client_ip(request)
        limited = None
        if not self.tracker.hit(ip):
            limited = self.tracker
        elif (
            self.chat_tracker is not None
            and request.method == "POST"
            and path.rstrip("/") == CHAT_PATH
            and not self.chat_tracker.hit(ip)
        ):
            limited = self.chat_tracker

        if limited is not None:
            logger.warning(f"[RateLimit] Blocked {request.method} {path} from {ip}")
            return JSONResponse(
                {
                    "error": "Too many requests",
                    "message": "Too many requests. Please try again later.",
                },
                status_code=429,
                headers={"Retry-After": str(int(limited.window))},
            )
        return await call_next(request)
