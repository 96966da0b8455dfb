"""
API Rate Limiting for mutating vault endpoints.

Implements:
- Per-IP sliding-window rate limiting (every POST/PUT/DELETE route)
- Graceful 429 responses with Retry-After headers
- Configurable limit per window

This is independent of the UnlockGuard, which additionally locks a
source out after repeated wrong master passwords.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Dict, List, Tuple

from fastapi import Request

from ..core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimitConfig:
    """Rate limiting configuration."""

    MUTATIONS_PER_MINUTE = 60

    # Time windows (in seconds)
    MINUTE_WINDOW = 60

    # Cleanup interval (delete old entries)
    CLEANUP_INTERVAL_SECONDS = 3600


class InMemoryRateLimiter:
    """
    In-memory rate limiter.

    Tracks request timestamps per IP in sliding windows. State is
    process-local; a restart clears it.
    """

    def __init__(self):
        """Initialize rate limiter."""
        # Track: (ip) -> [timestamp, ...]
        self.ip_requests: Dict[str, List[float]] = defaultdict(list)
        self.last_cleanup = time.time()
        self._lock = threading.Lock()

    def _cleanup_old_entries(self, now: float) -> None:
        """Drop IPs with no requests in the last hour."""
        if now - self.last_cleanup < RateLimitConfig.CLEANUP_INTERVAL_SECONDS:
            return

        cutoff = now - RateLimitConfig.CLEANUP_INTERVAL_SECONDS
        for ip in list(self.ip_requests.keys()):
            self.ip_requests[ip] = [ts for ts in self.ip_requests[ip] if ts > cutoff]
            if not self.ip_requests[ip]:
                del self.ip_requests[ip]

        self.last_cleanup = now
        logger.debug("Rate limiter cleanup complete")

    def check_ip_limit(
        self,
        ip: str,
        limit: int,
        window_seconds: int,
    ) -> Tuple[bool, int, int]:
        """
        Check if IP has exceeded rate limit, recording the request if not.

        Args:
            ip: Client IP address
            limit: Max requests allowed
            window_seconds: Time window in seconds

        Returns:
            Tuple of (allowed: bool, current_count: int, retry_after_seconds: int)
        """
        now = time.time()
        with self._lock:
            self._cleanup_old_entries(now)

            cutoff = now - window_seconds
            recent = [ts for ts in self.ip_requests[ip] if ts > cutoff]
            self.ip_requests[ip] = recent  # Keep only recent

            if len(recent) >= limit:
                oldest = min(recent)
                retry_after = int((oldest + window_seconds) - now) + 1
                return False, len(recent), retry_after

            recent.append(now)
            return True, len(recent), 0

    def reset_all(self) -> None:
        with self._lock:
            self.ip_requests.clear()


def get_client_ip(request: Request) -> str:
    """
    Client IP of the direct connection.

    Forwarding headers are ignored: the daemon listens on localhost only
    and a spoofed X-Forwarded-For would let a caller dodge the limits.
    """
    if request.client:
        return request.client.host
    return "unknown"


async def rate_limit_mutations(request: Request) -> None:
    """
    FastAPI dependency for IP-based rate limiting of mutating routes.

    Usage:
        @router.post("/keys", dependencies=[Depends(rate_limit_mutations)])

    Raises:
        RateLimitedError: 429 Too Many Requests if limit exceeded
    """
    limiter: InMemoryRateLimiter = request.app.state.rate_limiter
    limit = getattr(request.app.state, "request_rate_limit", RateLimitConfig.MUTATIONS_PER_MINUTE)
    window = RateLimitConfig.MINUTE_WINDOW
    ip = get_client_ip(request)

    allowed, count, retry_after = limiter.check_ip_limit(ip, limit, window)

    if not allowed:
        logger.warning(f"Rate limit exceeded for IP {ip}: {count} requests in {window}s")
        raise RateLimitedError(
            retry_after,
            f"Rate limit exceeded. Max {limit} requests per {window}s.",
        )

    logger.debug(f"IP {ip}: {count}/{limit} requests in {window}s window")
