"""Simple in-memory rate limiting utilities."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass
class _Bucket:
    timestamps: Deque[float]


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: int = 0


class InMemoryRateLimiter:
    """Sliding-window rate limiter suitable for single-node deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def _prune(self, key: str, cutoff: float) -> _Bucket:
        bucket = self._buckets.setdefault(key, _Bucket(timestamps=deque()))
        while bucket.timestamps and bucket.timestamps[0] < cutoff:
            bucket.timestamps.popleft()
        return bucket

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = time.time()
        with self._lock:
            bucket = self._prune(key, now - window_seconds)
            if len(bucket.timestamps) >= limit:
                retry_after = int(bucket.timestamps[0] + window_seconds - now) + 1
                return RateLimitResult(False, max(retry_after, 1))
            bucket.timestamps.append(now)
            return RateLimitResult(True)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


rate_limiter = InMemoryRateLimiter()
