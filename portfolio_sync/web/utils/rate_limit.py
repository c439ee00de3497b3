"""
In-memory throttling for endpoints that start background work.

Sync triggers and recalculations are limited per organization, caller IP and
endpoint with a sliding window.
"""

import time
from collections import defaultdict, deque
from functools import wraps
from threading import Lock
from typing import Deque, Dict, Optional

from flask import current_app, jsonify, request


class RateLimiter:
    """Sliding-window request log per key, safe for threaded servers."""

    def __init__(self):
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def hit(self, key: str, max_requests: int, window_seconds: int) -> Optional[int]:
        """
        Count one request against a key unless the window is full.

        Args:
            key: Bucket identifier
            max_requests: Requests allowed per window
            window_seconds: Window length in seconds

        Returns:
            Optional[int]: None when the request is allowed, otherwise the
                seconds until the oldest request leaves the window
        """
        now = time.monotonic()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= max_requests:
                return max(int(hits[0] + window_seconds - now) + 1, 1)
            hits.append(now)
            return None

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when None."""
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


# Fallback for applications created without their own limiter
api_limiter = RateLimiter()


def get_client_ip() -> str:
    """First address in X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def rate_limit_api(max_requests=30, window_seconds=60):
    """
    Throttle a view per organization, client IP and endpoint.

    Args:
        max_requests: Requests allowed per window
        window_seconds: Window length in seconds
    """
    def decorator(view):
        @wraps(view)
        def limited(*args, **kwargs):
            limiter = getattr(current_app, 'rate_limiter', api_limiter)
            organization_id = kwargs.get('organization_id', '-')
            ip = get_client_ip()
            retry_after = limiter.hit(
                f"api:{organization_id}:{ip}:{request.endpoint}", max_requests, window_seconds
            )
            if retry_after is not None:
                current_app.logger.warning(
                    f"Rate limit hit by {ip} on {request.endpoint} for '{organization_id}'"
                )
                response = jsonify({'error': 'Rate limit exceeded', 'retry_after': retry_after})
                response.status_code = 429
                response.headers['Retry-After'] = str(retry_after)
                return response
            return view(*args, **kwargs)
        return limited
    return decorator
