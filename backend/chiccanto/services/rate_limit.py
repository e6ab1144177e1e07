from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from chiccanto.core.errors import ApiError
from chiccanto.services.kv_store import KVStore

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 3
TTL_SLACK_S = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after_seconds: int


class RateLimitedError(ApiError):
    status_code = 429
    error = "Too many attempts."
    error_code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            extra={"retryAfterSeconds": retry_after_seconds},
            headers={"Retry-After": str(retry_after_seconds)},
        )


def _parse_count(raw: str | None) -> int:
    try:
        return max(0, int(raw or 0))
    except ValueError:
        return 0


class FixedWindowRateLimiter:
    """Counts hits per ``rl:<scope>:<window_id>`` with ``window_id = floor(now / window_s)``."""

    def __init__(self, store: KVStore, *, limit: int, window_s: int, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._limit = max(1, int(limit))
        self._window_s = max(1, int(window_s))
        self._clock = clock

    def key_for(self, scope: str, now: float) -> str:
        return f"rl:{scope}:{int(math.floor(now / self._window_s))}"

    def hit(self, scope: str, now: float | None = None) -> RateLimitDecision:
        now = self._clock() if now is None else now
        key = self.key_for(scope, now)
        window_end = (math.floor(now / self._window_s) + 1) * self._window_s
        retry_after = max(1, int(math.ceil(window_end - now)))
        ttl_s = self._window_s + TTL_SLACK_S

        for _ in range(CAS_ATTEMPTS):
            raw = self._store.get(key)
            count = _parse_count(raw)
            if count >= self._limit:
                logger.info("rate_limit.blocked scope=%s count=%s", scope, count)
                return RateLimitDecision(allowed=False, count=count, retry_after_seconds=retry_after)
            if self._store.compare_and_set(key, raw, str(count + 1), ttl_s=ttl_s):
                return RateLimitDecision(allowed=True, count=count + 1, retry_after_seconds=0)

        # Contended: count best-effort rather than failing the request.
        count = _parse_count(self._store.get(key)) + 1
        self._store.put(key, str(count), ttl_s=ttl_s)
        return RateLimitDecision(allowed=count <= self._limit, count=count, retry_after_seconds=retry_after)

    def enforce(self, scope: str) -> RateLimitDecision:
        decision = self.hit(scope)
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after_seconds)
        return decision
