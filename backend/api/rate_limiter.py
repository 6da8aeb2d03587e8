import time
import logging
from typing import Dict, Optional, Tuple
from collections import defaultdict, deque
from fastapi import HTTPException, Request

from .security import extract_ip_address, SecurityLogger

logger = logging.getLogger(__name__)

# (requests_per_window, window_seconds)
LIMITS: Dict[str, Tuple[int, int]] = {
    'default': (100, 60),
    'transcribe': (10, 60),     # Whisper uploads are large and slow
    'recipes': (6, 60),         # streamed GPT generations
    'recipe_detail': (20, 60),
    'tokens': (30, 60),
    'sessions': (10, 60),
    'gamification': (60, 60),
    'admin': (2, 3600),         # monthly reset
}


class RateLimiter:
    """Sliding-window limiter kept in process memory, one deque per caller"""

    def __init__(self, limits: Dict[str, Tuple[int, int]] = None, cleanup_interval: int = 300):
        self.requests = defaultdict(deque)
        self.limits = dict(limits or LIMITS)
        self.cleanup_interval = cleanup_interval
        self.last_cleanup = time.time()

    def get_identifier(self, request: Request, user_id: str = None) -> str:
        if user_id:
            return f"user:{user_id}"
        client_ip = extract_ip_address(request) or (request.client.host if request.client else "unknown")
        return f"ip:{client_ip}"

    def check_rate_limit(self, identifier: str, limit_type: str = 'default',
                         now: Optional[float] = None) -> Tuple[bool, Dict]:
        """Record a hit for identifier; returns (allowed, window info)"""
        current_time = now if now is not None else time.time()

        if current_time - self.last_cleanup > self.cleanup_interval:
            self._cleanup_old_requests(current_time)
            self.last_cleanup = current_time

        max_requests, window_seconds = self.limits.get(limit_type, self.limits['default'])
        # Windows are tracked per limit class
        request_times = self.requests[f"{identifier}:{limit_type}"]

        cutoff_time = current_time - window_seconds
        while request_times and request_times[0] <= cutoff_time:
            request_times.popleft()

        if len(request_times) >= max_requests:
            reset_time = request_times[0] + window_seconds
            return False, {
                'limit': max_requests,
                'window': window_seconds,
                'current': len(request_times),
                'retry_after': max(1, int(reset_time - current_time)),
                'reset_time': reset_time
            }

        request_times.append(current_time)
        return True, {
            'limit': max_requests,
            'window': window_seconds,
            'current': len(request_times),
            'remaining': max_requests - len(request_times),
            'reset_time': current_time + window_seconds
        }

    def reset(self):
        self.requests.clear()

    def _cleanup_old_requests(self, current_time: float):
        """Drop timestamps older than the longest window and forget idle callers"""
        max_window = max(window for _, window in self.limits.values())
        cutoff_time = current_time - max_window

        for key in list(self.requests):
            request_times = self.requests[key]
            while request_times and request_times[0] < cutoff_time:
                request_times.popleft()
            if not request_times:
                del self.requests[key]


# Global rate limiter instance
rate_limiter = RateLimiter()


def check_rate_limit(request: Request, user_id: str = None, limit_type: str = 'default',
                     security_logger: SecurityLogger = None):
    """Raise 429 when the caller is over its window for this limit class"""
    identifier = rate_limiter.get_identifier(request, user_id)
    allowed, info = rate_limiter.check_rate_limit(identifier, limit_type)

    if not allowed:
        logger.warning(f"Rate limit exceeded for {identifier} ({limit_type})", extra={"user_id": user_id})
        if security_logger is not None:
            security_logger.log_rate_limit_exceeded(limit_type, request, user_id)
        raise HTTPException(
            status_code=429,
            detail={
                "error": "RATE_LIMIT_EXCEEDED",
                "message": f"Rate limit exceeded. Try again in {info['retry_after']} seconds.",
                "limit": info['limit'],
                "window_seconds": info['window'],
                "retry_after": info['retry_after']
            },
            headers={
                "Retry-After": str(info['retry_after']),
                "X-RateLimit-Limit": str(info['limit']),
                "X-RateLimit-Window": str(info['window']),
                "X-RateLimit-Remaining": "0"
            }
        )

    return info
