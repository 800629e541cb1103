"""
Rate limiting. In-memory sliding window per key (bucket + client IP), applied in front of
POST /login, POST /oauth/token and GET /oauth/authorize to slow down brute force.
"""
import math
import threading
import time

from fastapi import Request

from password_oauth.audit import get_client_ip
from password_oauth.errors import TOO_MANY_REQUESTS, OAuthError

BUCKET_LOGIN = "login"
BUCKET_TOKEN = "token"
BUCKET_AUTHORIZE = "authorize"

_MESSAGES = {
    BUCKET_LOGIN: "Too many login attempts. Please try again later.",
    BUCKET_TOKEN: "Too many token requests. Please try again later.",
    BUCKET_AUTHORIZE: "Too many authorization requests. Please try again later.",
}


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int, clock=time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep(self, cutoff: float) -> None:
        # Drop keys whose newest request has left the window; caller holds the lock
        stale = [key for key, timestamps in self._store.items() if timestamps[-1] <= cutoff]
        for key in stale:
            del self._store[key]

    def check_and_consume(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1).
        """
        if limit <= 0:
            return True, None
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            timestamps = [t for t in self._store.get(key, ()) if t > cutoff]
            if len(timestamps) >= limit:
                self._store[key] = timestamps
                oldest = timestamps[0]
                retry_after = max(1, math.ceil(self.window_seconds - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            self._store[key] = timestamps
            return True, None


class RateLimit:
    """Dependency: raise 429 too_many_requests once the bucket's limit is used up."""

    def __init__(self, bucket: str):
        self.bucket = bucket

    def __call__(self, request: Request) -> None:
        settings = request.app.state.oauth_settings
        limiter: SlidingWindowLimiter = request.app.state.rate_limiter
        limit = getattr(settings, f"rate_limit_{self.bucket}")
        key = f"{self.bucket}:{get_client_ip(request) or 'unknown'}"
        allowed, retry_after = limiter.check_and_consume(key, limit)
        if not allowed:
            raise OAuthError(
                TOO_MANY_REQUESTS,
                _MESSAGES[self.bucket],
                status_code=429,
                headers={"Retry-After": str(retry_after)},
            )
