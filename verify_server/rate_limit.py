"""
Rate limiting. In-memory sliding window per key (client IP or user id).
Used for init and complete, both reachable by anonymous third-party pages.
"""
import math
import threading
import time

from fastapi import Depends, HTTPException, Request, status

from verify_server.config import TRUSTED_PROXY_HOPS


class SlidingWindowRateLimiter:
    def __init__(self) -> None:
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1).
        """
        if limit <= 0:
            return True, None
        now = time.monotonic()
        with self._lock:
            timestamps = self._store.setdefault(key, [])
            cutoff = now - window_seconds
            timestamps[:] = [t for t in timestamps if t > cutoff]
            if len(timestamps) >= limit:
                oldest = min(timestamps)
                retry_after = max(1, math.ceil(window_seconds - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            return True, None


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    """Dependency: app-wide limiter."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = SlidingWindowRateLimiter()
        request.app.state.rate_limiter = limiter
    return limiter


def client_ip(request: Request) -> str | None:
    """
    Caller address. Each trusted proxy appends the peer it saw to X-Forwarded-For, so only the
    rightmost TRUSTED_PROXY_HOPS entries are reliable; anything to their left is client-supplied.
    """
    hops = TRUSTED_PROXY_HOPS
    if hops <= 0:
        return request.client.host if request.client else None
    forwarded_for = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
    if forwarded_for:
        return forwarded_for[-min(hops, len(forwarded_for))]
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client is None:
        return None
    return request.client.host


def client_identifier(request: Request) -> str:
    return f"ip:{client_ip(request) or 'unknown'}"


def enforce_rate_limit(limiter: SlidingWindowRateLimiter, key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 with Retry-After when key is over its limit."""
    allowed, retry_after = limiter.check_and_consume(key, limit, window_seconds)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limited",
                "error_description": "Too many requests. Please try again later.",
                "retryAfter": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )


def rate_limit(scope: str, limit: int, window_seconds: int):
    """Dependency factory: per-client-IP limit for the given endpoint scope."""

    def _check(request: Request, limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter)) -> None:
        enforce_rate_limit(limiter, f"{scope}:{client_identifier(request)}", limit, window_seconds)

    return Depends(_check)
