"""
Run guards for background jobs.

Several web workers may each start a sweep timer; the lock makes sure only
one of them sweeps at a time. Supports an in-memory fallback for tests/local
runs and a Redis-backed implementation for production.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class SweepLock(Protocol):
    """Minimal non-blocking lock interface keyed by job name."""

    def acquire(self, name: str, ttl_seconds: float) -> bool:
        ...

    def release(self, name: str) -> None:
        ...


@dataclass
class InMemorySweepLock:
    """Process-local lock with expiry, for tests/dev."""

    held: dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        self._mutex = threading.Lock()

    def acquire(self, name: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        with self._mutex:
            expires = self.held.get(name)
            if expires is not None and expires > now:
                return False
            self.held[name] = now + ttl_seconds
            return True

    def release(self, name: str) -> None:
        with self._mutex:
            self.held.pop(name, None)


# Delete the key only if we still own it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass
class RedisSweepLock:
    """Redis-backed lock using SET NX PX with an owner token."""

    url: str
    prefix: str = "divinenex:lock:"
    timeout_seconds: float = 5.0

    def __post_init__(self):
        self.client = self._connect()
        self._tokens: dict[str, str] = {}

    def _connect(self) -> redis.Redis:
        return redis.Redis.from_url(
            self.url,
            socket_timeout=self.timeout_seconds,
            socket_connect_timeout=self.timeout_seconds,
        )

    def acquire(self, name: str, ttl_seconds: float) -> bool:
        token = uuid.uuid4().hex
        try:
            acquired = self.client.set(
                self.prefix + name, token, nx=True, px=max(1, int(ttl_seconds * 1000))
            )
        except redis_exceptions.RedisError as exc:
            # Managed Redis drops idle connections; rebuild and skip this run.
            logger.warning("Redis unavailable while acquiring %s lock: %s", name, exc)
            self.client = self._connect()
            return False
        if not acquired:
            return False
        self._tokens[name] = token
        return True

    def release(self, name: str) -> None:
        token = self._tokens.pop(name, None)
        if token is None:
            return
        try:
            self.client.eval(_RELEASE_SCRIPT, 1, self.prefix + name, token)
        except redis_exceptions.RedisError as exc:
            # The key expires on its own.
            logger.warning("Redis unavailable while releasing %s lock: %s", name, exc)
            self.client = self._connect()
