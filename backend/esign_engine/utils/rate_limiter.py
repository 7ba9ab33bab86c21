"""
Memory-based rate limiter for OTP issuance endpoints.
Sliding window per (client IP, route template); rejections surface as
CooldownActive so the API answers 429 with a Retry-After header.
"""
import math
import time
from collections import deque
from typing import Deque, Dict, Tuple

from fastapi import Request

from esign_engine.exceptions import ErrorKind, OtpError

# {(ip, route template): (window, timestamps of accepted requests)}
_rate_limit_store: Dict[Tuple[str, str], Tuple[int, Deque[float]]] = {}


def _route_key(request: Request) -> str:
    # "/api/signing/sessions/{session_id}/otp" rather than the concrete path,
    # so the store holds one entry per client per route
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _prune(now: float):
    """Drop keys whose newest hit has left its window."""
    stale = [
        key for key, (window, hits) in _rate_limit_store.items()
        if not hits or now - hits[-1] >= window
    ]
    for key in stale:
        del _rate_limit_store[key]


def rate_limit(requests: int, window: int):
    """
    Dependency for rate limiting.
    Example: Depends(rate_limit(requests=5, window=300))
    """
    def limiter(request: Request):
        ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        _prune(now)
        _, hits = _rate_limit_store.setdefault((ip, _route_key(request)), (window, deque()))

        while hits and now - hits[0] >= window:
            hits.popleft()

        if len(hits) >= requests:
            wait = max(1, math.ceil(window - (now - hits[0])))
            raise OtpError(
                ErrorKind.COOLDOWN_ACTIVE,
                f"Too many code requests. Try again in {wait} seconds.",
                retry_after=wait,
            )

        hits.append(now)
        return True

    return limiter


def rate_limit_keys():
    return list(_rate_limit_store)


def reset_rate_limits():
    _rate_limit_store.clear()
