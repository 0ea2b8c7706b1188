# =============================================================================
# Dispatch Queue — At-Least-Once Delivery with Visibility Timeouts
# =============================================================================
#
# Carries DispatchMessages from the Planner to Worker Executors.
#
# SEMANTICS:
# - enqueue(message, delay): message becomes visible after `delay` seconds
#   (used for retry backoff).
# - dequeue(max_wait): claims the oldest visible message and hides it for
#   `visibility_timeout` seconds. Blocks up to `max_wait`.
# - acknowledge(message_id): deletes the message for good.
# - extend_visibility(message_id, duration): pushes the hidden window out
#   for long-running tasks.
# - A message not acknowledged before its window lapses is visible again and
#   will be redelivered. This is how crashed executors are recovered.
#
# Ordering: messages become visible in (visible_at, enqueue order); a single
# producer's messages with equal delay are delivered in enqueue order.
#
# ARCHITECTURE:
#   DispatchQueue (Protocol)
#   ├── RedisDispatchQueue    — sorted set of visible-at times + body hash,
#   │                           atomic Lua claim, cooperative polling
#   └── InMemoryDispatchQueue — thread-safe, condition-variable blocking
#                               (tests and single-process runs)
# =============================================================================

from __future__ import annotations

import heapq
import itertools
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from pydantic import ValidationError

from fin_orchestrator.config import settings
from fin_orchestrator.models.domain import DISPATCH_SCHEMA_VERSION, Delivery, DispatchMessage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DispatchQueue(Protocol):
    """Queue interface consumed by the Planner (producer) and Executors."""

    def enqueue(self, message: DispatchMessage, delay: float = 0.0) -> None:
        """Publish a message; raises on infrastructure failure."""
        ...

    def dequeue(self, max_wait: float) -> Delivery | None:
        """Claim one visible message, waiting up to `max_wait` seconds."""
        ...

    def acknowledge(self, message_id: str) -> bool:
        """Delete a claimed message. Returns False if it was already gone."""
        ...

    def extend_visibility(self, message_id: str, duration: float) -> bool:
        """Hide a claimed message for `duration` more seconds from now."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    message: DispatchMessage
    visible_at: float
    seq: int
    receive_count: int = 0


class InMemoryDispatchQueue:
    """
    Process-local queue with the same visibility semantics as Redis.

    `clock` is injectable so tests can expire visibility windows without
    sleeping.
    """

    def __init__(
        self,
        visibility_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.visibility_timeout_seconds
        )
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._cond = threading.Condition()

    def enqueue(self, message: DispatchMessage, delay: float = 0.0) -> None:
        with self._cond:
            self._entries[message.message_id] = _Entry(
                message=message,
                visible_at=self._clock() + max(delay, 0.0),
                seq=next(self._seq),
            )
            self._cond.notify()
        logger.debug(
            "Enqueued message %s (task=%s, attempt=%d, delay=%.2fs)",
            message.message_id, message.task_id, message.attempt, delay,
        )

    def dequeue(self, max_wait: float) -> Delivery | None:
        # Bounded by both clocks: an injected clock may never advance on its own
        give_up_at = self._clock() + max(max_wait, 0.0)
        real_give_up_at = time.monotonic() + max(max_wait, 0.0)
        with self._cond:
            while True:
                now = self._clock()
                visible = [e for e in self._entries.values() if e.visible_at <= now]
                if visible:
                    entry = heapq.nsmallest(1, visible, key=lambda e: (e.visible_at, e.seq))[0]
                    entry.visible_at = now + self.visibility_timeout
                    entry.receive_count += 1
                    return Delivery(message=entry.message, receive_count=entry.receive_count)

                remaining = min(give_up_at - now, real_give_up_at - time.monotonic())
                if remaining <= 0:
                    return None
                next_visible = min(
                    (e.visible_at for e in self._entries.values()), default=None,
                )
                wait = remaining if next_visible is None else min(remaining, next_visible - now)
                self._cond.wait(timeout=max(wait, 0.001))

    def acknowledge(self, message_id: str) -> bool:
        with self._cond:
            return self._entries.pop(message_id, None) is not None

    def extend_visibility(self, message_id: str, duration: float) -> bool:
        with self._cond:
            entry = self._entries.get(message_id)
            if entry is None:
                return False
            entry.visible_at = self._clock() + duration
            return True

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def messages(self) -> list[DispatchMessage]:
        """Snapshot of every stored message, visible or not, in queue order."""
        with self._cond:
            entries = sorted(self._entries.values(), key=lambda e: (e.visible_at, e.seq))
            return [e.message for e in entries]


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------
# Keys (prefix = settings.queue_prefix):
#   {prefix}:schedule  ZSET  message_id → visible-at (server time, seconds)
#   {prefix}:bodies    HASH  message_id → DispatchMessage JSON
#   {prefix}:receives  HASH  message_id → delivery count
#
# Visible-at times use Redis server TIME so executors on different hosts
# agree on when a window lapses.
# ---------------------------------------------------------------------------

_ENQUEUE_LUA = """
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
redis.call('HSET', KEYS[2], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[1], now + tonumber(ARGV[3]), ARGV[1])
return 1
"""

_CLAIM_LUA = """
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now, 'LIMIT', 0, 1)
if #ids == 0 then
  return false
end
local id = ids[1]
local body = redis.call('HGET', KEYS[2], id)
if not body then
  redis.call('ZREM', KEYS[1], id)
  redis.call('HDEL', KEYS[3], id)
  return {id, false, 0}
end
redis.call('ZADD', KEYS[1], now + tonumber(ARGV[1]), id)
local count = redis.call('HINCRBY', KEYS[3], id, 1)
return {id, body, count}
"""

_EXTEND_LUA = """
if not redis.call('ZSCORE', KEYS[1], ARGV[1]) then
  return 0
end
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
redis.call('ZADD', KEYS[1], 'XX', now + tonumber(ARGV[2]), ARGV[1])
return 1
"""


class RedisDispatchQueue:
    """Shared queue for multi-process deployments."""

    def __init__(
        self,
        client=None,
        prefix: str | None = None,
        visibility_timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> None:
        if client is None:
            import redis

            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self._client = client
        prefix = prefix or settings.queue_prefix
        self._schedule_key = f"{prefix}:schedule"
        self._bodies_key = f"{prefix}:bodies"
        self._receives_key = f"{prefix}:receives"
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.visibility_timeout_seconds
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.queue_poll_interval_seconds
        )
        self._enqueue_script = client.register_script(_ENQUEUE_LUA)
        self._claim_script = client.register_script(_CLAIM_LUA)
        self._extend_script = client.register_script(_EXTEND_LUA)

    def enqueue(self, message: DispatchMessage, delay: float = 0.0) -> None:
        self._enqueue_script(
            keys=[self._schedule_key, self._bodies_key],
            args=[message.message_id, message.to_json(), max(delay, 0.0)],
        )
        logger.debug(
            "Enqueued message %s (task=%s, attempt=%d, delay=%.2fs)",
            message.message_id, message.task_id, message.attempt, delay,
        )

    def dequeue(self, max_wait: float) -> Delivery | None:
        give_up_at = time.monotonic() + max(max_wait, 0.0)
        while True:
            delivery = self._try_claim()
            if delivery is not None:
                return delivery
            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    def acknowledge(self, message_id: str) -> bool:
        pipe = self._client.pipeline(transaction=True)
        pipe.zrem(self._schedule_key, message_id)
        pipe.hdel(self._bodies_key, message_id)
        pipe.hdel(self._receives_key, message_id)
        removed, _, _ = pipe.execute()
        return bool(removed)

    def extend_visibility(self, message_id: str, duration: float) -> bool:
        return bool(
            self._extend_script(
                keys=[self._schedule_key],
                args=[message_id, duration],
            )
        )

    def _try_claim(self) -> Delivery | None:
        claimed = self._claim_script(
            keys=[self._schedule_key, self._bodies_key, self._receives_key],
            args=[self.visibility_timeout],
        )
        if not claimed:
            return None
        message_id, body, count = claimed
        if not body:
            logger.warning("Dropped queue entry %s with no message body", message_id)
            return None
        try:
            message = DispatchMessage.from_json(body)
        except ValidationError as exc:
            if _newer_schema(body):
                logger.warning("Message %s uses a newer schema; leaving it for a newer executor", message_id)
                return None
            # Can never be handled; acknowledge so it stops cycling
            logger.error("Discarding malformed message %s: %s", message_id, exc)
            self.acknowledge(message_id)
            return None
        return Delivery(message=message, receive_count=int(count))


def _newer_schema(body: str) -> bool:
    try:
        version = json.loads(body).get("schema_version")
    except (ValueError, AttributeError):
        return False
    return isinstance(version, int) and version > DISPATCH_SCHEMA_VERSION


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_queue: RedisDispatchQueue | InMemoryDispatchQueue | None = None


def get_dispatch_queue(
    override_backend: str | None = None,
) -> RedisDispatchQueue | InMemoryDispatchQueue:
    """
    Return the configured queue backend (process-wide singleton).

    - "redis"  → RedisDispatchQueue (default, shared across processes)
    - "memory" → InMemoryDispatchQueue (single process only)
    """
    global _queue
    backend = override_backend or settings.queue_backend
    if _queue is None or override_backend is not None:
        if backend == "memory":
            logger.info("Using in-memory dispatch queue")
            queue: RedisDispatchQueue | InMemoryDispatchQueue = InMemoryDispatchQueue()
        else:
            logger.info("Using Redis dispatch queue (%s)", settings.queue_prefix)
            queue = RedisDispatchQueue()
        if override_backend is not None:
            return queue
        _queue = queue
    return _queue
