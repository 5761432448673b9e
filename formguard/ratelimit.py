"""Sliding-window rate limiting for the relay endpoints.

Built on the ``limits`` moving-window strategy, the same package slowapi
uses for the per-route limits in :mod:`formguard.main`. The storage is handed
to the limiter, so tests get an isolated store and a deployment can point
several workers at one shared backend via ``storage_from_string``. The
default :class:`~limits.storage.MemoryStorage` is scoped to one process:
running several workers multiplies the effective limit.
"""

import math
import time
from typing import Optional

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from formguard.config.settings import RateLimitConfig


class RateLimitDecision(BaseModel):
    admitted: bool
    count: int
    retry_after: int = 0


def create_window_store(uri: Optional[str] = None) -> Storage:
    """Storage for request windows: in memory, or e.g. ``redis://host:6379``."""
    if not uri:
        return MemoryStorage()
    return storage_from_string(uri)


class SlidingWindowRateLimiter:
    """Admits a request iff, counting it, at most ``max`` fall inside the trailing window.

    Rejected requests are not recorded. ``scope`` separates limiters sharing
    one store, so each relay keeps its own windows.
    """

    def __init__(self, config: RateLimitConfig, store: Optional[Storage] = None, scope: str = "relay"):
        self.config = config
        self.scope = scope
        self.store = store if store is not None else MemoryStorage()
        self._item = RateLimitItemPerSecond(config.max, config.window_sec)
        self._strategy = MovingWindowRateLimiter(self.store)

    def check(self, key: str) -> RateLimitDecision:
        if self._strategy.hit(self._item, self.scope, key):
            return RateLimitDecision(admitted=True, count=self.count(key))
        reset_time, remaining = self._strategy.get_window_stats(self._item, self.scope, key)
        retry_after = max(1, math.ceil(reset_time - time.time()))
        return RateLimitDecision(
            admitted=False, count=self.config.max - remaining, retry_after=retry_after
        )

    def count(self, key: str) -> int:
        """Requests of ``key`` currently inside the window."""
        _, remaining = self._strategy.get_window_stats(self._item, self.scope, key)
        return self.config.max - remaining

    def reset(self) -> None:
        self.store.reset()
