"""
Rate limiting middleware support
"""
import time
from collections import defaultdict, deque
from fastapi import Request, HTTPException
from typing import Callable, Deque, Dict, Tuple
import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    In-memory sliding-window rate limiter
    
    Clients are identified by the user id in the path (/api/users/{id}/...)
    or the X-User-Id header, falling back to the client IP. A separate,
    stricter window applies to the payment completion endpoint.
    """
    
    def __init__(
        self,
        requests_per_minute: int = 120,
        requests_per_hour: int = 2000,
        payment_requests_per_minute: int = 10,
        payment_path: str = "/api/payment/complete",
        cleanup_interval: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits: Dict[str, Tuple[int, int]] = {
            "minute": (requests_per_minute, 60),
            "hour": (requests_per_hour, 3600),
            "payment": (payment_requests_per_minute, 60),
        }
        self.payment_path = payment_path
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._last_cleanup = clock()
        # {(bucket, client_id): deque[timestamp]}
        self.windows: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
    
    def _get_client_id(self, request: Request) -> str:
        """Extract client identifier from request"""
        parts = request.url.path.strip("/").split("/")
        if len(parts) >= 3 and parts[0] == "api" and parts[1] == "users":
            return f"user:{parts[2]}"
        
        header_user = request.headers.get("x-user-id")
        if header_user:
            return f"user:{header_user}"
        
        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"
    
    @staticmethod
    def _expire(window: Deque[float], cutoff: float) -> None:
        while window and window[0] <= cutoff:
            window.popleft()
    
    def _cleanup_old_entries(self, now: float) -> None:
        """Drop expired timestamps and remove clients with empty windows"""
        if now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        
        for key in list(self.windows.keys()):
            window = self.windows[key]
            self._expire(window, now - self.limits[key[0]][1])
            if not window:
                del self.windows[key]
    
    def _hit(self, bucket: str, client_id: str, now: float) -> None:
        limit, window_seconds = self.limits[bucket]
        window = self.windows.get((bucket, client_id))
        if not window:
            return
        
        self._expire(window, now - window_seconds)
        if len(window) >= limit:
            logger.warning(f"Rate limit exceeded ({bucket}): {client_id}")
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "rate_limit_exceeded",
                    "message": f"Too many requests. Limit: {limit} requests per {window_seconds}s",
                    "retry_after": int(window_seconds - (now - window[0])) + 1
                }
            )
    
    async def check_rate_limit(self, request: Request) -> None:
        """
        Check and record a request
        
        Raises:
            HTTPException: 429 if a limit is exceeded
        """
        client_id = self._get_client_id(request)
        now = self._clock()
        
        self._cleanup_old_entries(now)
        
        buckets = ["minute", "hour"]
        if request.url.path == self.payment_path:
            buckets.append("payment")
        
        for bucket in buckets:
            self._hit(bucket, client_id, now)
        for bucket in buckets:
            self.windows[(bucket, client_id)].append(now)
    
    def reset(self) -> None:
        self.windows.clear()
        self._last_cleanup = self._clock()


# Global instance
from detective.config import settings
rate_limiter = RateLimiter(
    requests_per_minute=settings.RATE_LIMIT_PER_MINUTE,
    requests_per_hour=settings.RATE_LIMIT_PER_HOUR,
    payment_requests_per_minute=settings.PAYMENT_RATE_LIMIT_PER_MINUTE,
)
