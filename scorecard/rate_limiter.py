"""HubSpot API rate limiter.

Sliding-window limiter for the HubSpot free tier (100 requests per 10 seconds).
A request made at time t counts against the window while now - t < window,
so a request exactly one window old no longer counts.

InMemoryRateLimiter suits a single process. Deployments running several
workers or web processes must share one bucket, otherwise each process gets
its own quota and HubSpot's is exceeded. Use RedisRateLimiter there.
"""

import math
import os
import sys
import time
import uuid
import threading
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

import redis

from .config import get_rate_limit_config
from .errors import ValidationError


@dataclass
class RateLimitResult:
    allowed: bool
    remaining_requests: int
    reset_time: Optional[datetime] = None
    retry_after: Optional[int] = None
    batch_size: Optional[int] = None
    allowed_batch_size: Optional[int] = None

    def to_dict(self):
        data = asdict(self)
        data['reset_time'] = self.reset_time.isoformat() if self.reset_time else None
        return data


class RateLimiter:
    """Common interface and window arithmetic for limiter backends."""

    def __init__(self, max_requests=100, window_seconds=10, identifier='default', clock=time.time):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.identifier = identifier
        self._clock = clock

    # Backends implement these two. Both return (timestamps_in_window, now)
    # after pruning; _reserve additionally records `count` new requests.
    def _reserve(self, key, count, allow_partial):
        raise NotImplementedError

    def _snapshot(self, key):
        raise NotImplementedError

    def check_rate_limit(self, identifier=None):
        """Atomically test and consume one slot."""
        key = identifier or self.identifier
        granted, in_window, now = self._reserve(key, 1, allow_partial=False)

        if not granted:
            return RateLimitResult(
                allowed=False,
                remaining_requests=0,
                reset_time=self._reset_time(in_window, now),
                retry_after=self._retry_after(in_window, now),
            )

        return RateLimitResult(
            allowed=True,
            remaining_requests=max(0, self.max_requests - len(in_window)),
            reset_time=self._reset_time(in_window, now),
        )

    def check_batch_rate_limit(self, batch_size, allow_partial=False, identifier=None):
        """
        Reserve batch_size slots at once. Without allow_partial, an
        insufficient window rejects the batch and consumes nothing; with it,
        as many slots as are free are consumed and reported in
        allowed_batch_size.
        """
        if batch_size <= 0:
            raise ValidationError("Batch size must be positive")

        key = identifier or self.identifier
        granted, in_window, now = self._reserve(key, batch_size, allow_partial)
        remaining = max(0, self.max_requests - len(in_window))

        if granted:
            return RateLimitResult(
                allowed=True,
                remaining_requests=remaining,
                reset_time=self._reset_time(in_window, now),
                batch_size=batch_size,
                allowed_batch_size=granted,
            )

        return RateLimitResult(
            allowed=False,
            remaining_requests=remaining,
            reset_time=self._reset_time(in_window, now),
            retry_after=self._retry_after(in_window, now, needed=batch_size),
            batch_size=batch_size,
            allowed_batch_size=0,
        )

    def get_status(self, identifier=None):
        """Current capacity without consuming a slot."""
        key = identifier or self.identifier
        in_window, now = self._snapshot(key)
        remaining = max(0, self.max_requests - len(in_window))
        return RateLimitResult(
            allowed=remaining > 0,
            remaining_requests=remaining,
            reset_time=self._reset_time(in_window, now),
            retry_after=None if remaining > 0 else self._retry_after(in_window, now),
        )

    def get_rate_limit_headers(self, identifier=None):
        """Standard rate-limit headers for an HTTP response."""
        status = self.get_status(identifier)
        headers = {
            'X-RateLimit-Limit': str(self.max_requests),
            'X-RateLimit-Remaining': str(status.remaining_requests),
            'X-RateLimit-Reset': str(math.ceil(status.reset_time.timestamp())),
        }
        if status.remaining_requests <= 0:
            headers['Retry-After'] = str(status.retry_after or 1)
        return headers

    def get_configuration(self):
        return {
            'max_requests': self.max_requests,
            'window_seconds': self.window_seconds,
            'identifier': self.identifier,
            'backend': self.backend,
        }

    def _reset_time(self, in_window, now):
        """When the oldest counted request leaves the window (now + window if empty)."""
        oldest = in_window[0] if in_window else now
        return datetime.fromtimestamp(oldest + self.window_seconds, tz=timezone.utc)

    def _retry_after(self, in_window, now, needed=1):
        """Whole seconds until `needed` slots are free; at least 1."""
        free = self.max_requests - len(in_window)
        if needed > self.max_requests:
            return self.window_seconds
        if free >= needed or not in_window:
            return 1
        # The (needed - free)-th oldest request must expire first
        release_at = in_window[needed - free - 1] + self.window_seconds
        return max(1, math.ceil(release_at - now))


class InMemoryRateLimiter(RateLimiter):
    """Per-process sliding window; one deque of timestamps per identifier."""

    backend = 'memory'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._buckets = {}
        self._lock = threading.Lock()
        self._last_sweep = self._clock()

    def _prune(self, bucket, now):
        while bucket and now - bucket[0] >= self.window_seconds:
            bucket.popleft()

    def _sweep(self, now):
        """Drop buckets idle for more than two windows. Caller holds the lock."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        stale = [k for k, b in self._buckets.items() if not b or now - b[-1] > self.window_seconds * 2]
        for key in stale:
            del self._buckets[key]

    def _reserve(self, key, count, allow_partial):
        with self._lock:
            now = self._clock()
            self._sweep(now)
            bucket = self._buckets.setdefault(key, deque())
            self._prune(bucket, now)

            free = self.max_requests - len(bucket)
            if free >= count:
                granted = count
            elif allow_partial and free > 0:
                granted = free
            else:
                return 0, list(bucket), now

            bucket.extend([now] * granted)
            return granted, list(bucket), now

    def _snapshot(self, key):
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                return [], now
            self._prune(bucket, now)
            return list(bucket), now

    def bucket_count(self):
        with self._lock:
            return len(self._buckets)


class RedisRateLimiter(RateLimiter):
    """
    Shared sliding window on a Redis sorted set per identifier (score =
    request timestamp). Reservations use WATCH/MULTI so concurrent processes
    never both take the last slot.
    """

    backend = 'redis'

    def __init__(self, redis_client, *args, key_prefix='scorecard:ratelimit', **kwargs):
        super().__init__(*args, **kwargs)
        self._redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, identifier):
        return f"{self.key_prefix}:{identifier}"

    def _reserve(self, key, count, allow_partial):
        redis_key = self._key(key)
        ttl = math.ceil(self.window_seconds * 2)
        outcome = {}

        def txn(pipe):
            now = self._clock()
            # Read while WATCHed; expired members are removed inside MULTI
            # so the read phase never touches the watched key.
            in_window = [
                score for _, score in pipe.zrange(redis_key, 0, -1, withscores=True)
                if now - score < self.window_seconds
            ]

            free = self.max_requests - len(in_window)
            if free >= count:
                granted = count
            elif allow_partial and free > 0:
                granted = free
            else:
                granted = 0

            pipe.multi()
            pipe.zremrangebyscore(redis_key, '-inf', now - self.window_seconds)
            if granted:
                members = {f"{now:.6f}:{uuid.uuid4().hex}": now for _ in range(granted)}
                pipe.zadd(redis_key, members)
                pipe.expire(redis_key, ttl)
                in_window = in_window + [now] * granted
            outcome.update(granted=granted, in_window=in_window, now=now)

        self._redis.transaction(txn, redis_key)
        return outcome['granted'], outcome['in_window'], outcome['now']

    def _snapshot(self, key):
        now = self._clock()
        redis_key = self._key(key)
        entries = self._redis.zrangebyscore(redis_key, f"({now - self.window_seconds}", '+inf', withscores=True)
        return [score for _, score in entries], now


# ─── Process-wide limiter ────────────────────────────────────────────────────

_limiter = None
_limiter_lock = threading.Lock()


def _redis_client():
    return redis.Redis(
        host=os.getenv('REDIS_HOST', 'localhost'),
        port=int(os.getenv('REDIS_PORT', 6379)),
        socket_connect_timeout=2,
    )


def build_rate_limiter(config=None, clock=time.time):
    """Construct a limiter from the rate_limiting config section."""
    cfg = config or get_rate_limit_config()
    common = dict(
        max_requests=cfg['max_requests'],
        window_seconds=cfg['window_seconds'],
        identifier=cfg['identifier'],
        clock=clock,
    )
    if cfg.get('backend') == 'redis':
        return RedisRateLimiter(_redis_client(), key_prefix=cfg.get('redis_key_prefix', 'scorecard:ratelimit'), **common)
    return InMemoryRateLimiter(**common)


def get_rate_limiter():
    """Return the shared limiter for this process (created once)."""
    global _limiter
    if _limiter is not None:
        return _limiter

    with _limiter_lock:
        if _limiter is None:
            _limiter = build_rate_limiter()
            cfg = _limiter.get_configuration()
            print(
                f"[rate_limiter] {cfg['backend']} limiter: {cfg['max_requests']} requests / "
                f"{cfg['window_seconds']}s for '{cfg['identifier']}'",
                file=sys.stderr,
            )
    return _limiter


def reset_rate_limiter():
    global _limiter
    with _limiter_lock:
        _limiter = None
