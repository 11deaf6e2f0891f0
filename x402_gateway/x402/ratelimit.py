# x402_gateway/x402/ratelimit.py
"""
Rate limiting for x402-gated endpoints.

Requests are counted per (client IP, path) in a sliding window kept in
memory, so counters reset on restart.

Configuration:
- X402_RATE_LIMIT_PER_IP: Maximum requests per minute per IP and path (default: 60)

Rate limiting runs before any challenge or payment work in the middleware.
"""
import logging
import math
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from x402_gateway.core.config import settings

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 300


@dataclass
class RateLimitWindow:
    """Request timestamps for one (IP, path) key."""
    requests: List[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Thread-safe; stale windows are dropped every few minutes.
    """

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        window_seconds: int = 60
    ):
        self._requests_per_minute = requests_per_minute
        self._window_seconds = window_seconds
        self._windows: Dict[str, RateLimitWindow] = defaultdict(RateLimitWindow)
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = time.time()

    @property
    def requests_per_minute(self) -> int:
        """Get the rate limit (lazy load from settings if not set)."""
        if self._requests_per_minute is not None:
            return self._requests_per_minute
        return settings.X402_RATE_LIMIT_PER_IP

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @staticmethod
    def make_key(client_ip: str, path: str = "") -> str:
        return f"{client_ip}:{path}"

    def hit(self, client_ip: str, path: str = "") -> Dict[str, Any]:
        """
        Record a request and report the window state.

        Args:
            client_ip: The client's IP address
            path: Request path; each path has its own budget

        Returns:
            Dict with limited, requests_made, limit, remaining and
            retry_after (seconds until the oldest request leaves the window)
        """
        limit = self.requests_per_minute
        now = time.time()
        window_start = now - self._window_seconds

        self._maybe_cleanup(now)

        window = self._windows[self.make_key(client_ip, path)]

        with window.lock:
            window.requests = [ts for ts in window.requests if ts > window_start]
            made = len(window.requests)

            if made >= limit:
                oldest = window.requests[0] if window.requests else now
                retry_after = max(1, math.ceil(oldest + self._window_seconds - now))
                logger.warning(
                    f"Rate limit exceeded for {client_ip} on {path}: "
                    f"{made}/{limit} requests in {self._window_seconds}s"
                )
                return {
                    "limited": True,
                    "requests_made": made,
                    "limit": limit,
                    "remaining": 0,
                    "retry_after": retry_after,
                }

            window.requests.append(now)
            made += 1

        return {
            "limited": False,
            "requests_made": made,
            "limit": limit,
            "remaining": max(0, limit - made),
            "retry_after": 0,
        }

    def reset_all(self) -> None:
        """Reset all rate limit tracking."""
        self._windows.clear()
        logger.info("Reset all rate limits")

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return

        with self._cleanup_lock:
            # Double-check after acquiring lock
            if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
                return

            self._last_cleanup = now
            window_start = now - self._window_seconds
            stale_keys = []

            for key, window in list(self._windows.items()):
                with window.lock:
                    window.requests = [ts for ts in window.requests if ts > window_start]
                    if not window.requests:
                        stale_keys.append(key)

            for key in stale_keys:
                self._windows.pop(key, None)

            if stale_keys:
                logger.debug(f"Cleaned up {len(stale_keys)} stale rate limit entries")


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter

    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                _rate_limiter = RateLimiter()

    return _rate_limiter


def check_rate_limit(client_ip: str, path: str) -> Tuple[bool, Dict[str, Any]]:
    """
    Main entry point for rate limiting in the middleware.

    Returns:
        Tuple of (is_allowed, stats); stats feed get_rate_limit_headers
    """
    stats = get_rate_limiter().hit(client_ip, path)
    stats["window_seconds"] = get_rate_limiter().window_seconds
    return (not stats["limited"], stats)


def get_rate_limit_headers(stats: Dict[str, Any]) -> Dict[str, str]:
    """
    Generate rate limit headers for HTTP responses.

    Retry-After is only present when the request was rejected.
    """
    headers = {
        "X-RateLimit-Limit": str(stats.get("limit", 0)),
        "X-RateLimit-Remaining": str(stats.get("remaining", 0)),
        "X-RateLimit-Reset": str(stats.get("window_seconds", 60)),
    }
    if stats.get("limited"):
        headers["Retry-After"] = str(stats.get("retry_after", 1))
    return headers


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (useful for testing)."""
    global _rate_limiter
    with _rate_limiter_lock:
        if _rate_limiter is not None:
            _rate_limiter.reset_all()
        _rate_limiter = None
