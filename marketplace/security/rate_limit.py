from __future__ import annotations

import threading
import time
from collections.abc import Callable

from fastapi import Request

from marketplace.config import settings
from marketplace.dependencies import get_client_ip
from marketplace.errors import RateLimited


class FixedWindowLimiter:
    """Counts hits per key inside fixed windows of `window_seconds`."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str, *, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window_seconds:
                started, count = now, 0
            if count >= limit:
                self._windows[key] = (started, count)
                return False
            self._windows[key] = (started, count + 1)
            return True

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


limiter = FixedWindowLimiter()


def rate_limit(requests: int, window_seconds: int):
    def _dep(request: Request) -> None:
        if not settings.rate_limit_enabled:
            return
        principal = getattr(request.state, 'principal', None)
        subject = f'user:{principal.id}' if principal else f'ip:{get_client_ip(request)}'
        key = f'{request.method}:{request.url.path}:{subject}'
        if not limiter.hit(key, limit=requests, window_seconds=window_seconds):
            raise RateLimited('Trop de requêtes, réessayez plus tard')

    return _dep
