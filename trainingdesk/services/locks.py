from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time
from typing import Any, AsyncIterator
from uuid import uuid4
import weakref

from trainingdesk.core.config import get_settings
from trainingdesk.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

# name -> (token, monotonic expiry) for processes running without Redis.
_local_leases: dict[str, tuple[str, float]] = {}
# Keyed mutexes are bound to the loop that created them.
_keyed_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, _KeyedLock]] = (
    weakref.WeakKeyDictionary()
)


@dataclass(slots=True)
class TaskLease:
    name: str
    token: str
    redis: Any | None
    local: bool


@dataclass(slots=True)
class _KeyedLock:
    lock: asyncio.Lock
    users: int = 0


def _lease_key(name: str) -> str:
    return f"{get_settings().lock_redis_prefix}:{name}"


async def acquire_task_lease(name: str, *, ttl_s: int) -> TaskLease | None:
    """Try to take the named lease without waiting.

    Returns None when another run holds it. The TTL bounds how long a crashed
    holder can block the next run.
    """
    token = uuid4().hex
    ttl_s = max(5, int(ttl_s))
    redis = await get_resilience_redis()
    if redis is not None:
        acquired = await redis.set(_lease_key(name), token, nx=True, ex=ttl_s)
        if not acquired:
            return None
        return TaskLease(name=name, token=token, redis=redis, local=False)

    now = time.monotonic()
    held = _local_leases.get(name)
    if held is not None and held[1] > now:
        return None
    _local_leases[name] = (token, now + ttl_s)
    return TaskLease(name=name, token=token, redis=None, local=True)


async def release_task_lease(lease: TaskLease) -> None:
    # Release only if this run still owns the token so an expired lease never clobbers a newer holder.
    if lease.local:
        held = _local_leases.get(lease.name)
        if held is not None and held[0] == lease.token:
            _local_leases.pop(lease.name, None)
        return
    if lease.redis is None:
        return
    key = _lease_key(lease.name)
    current = await lease.redis.get(key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lease.token:
        await lease.redis.delete(key)
    else:
        logger.warning("task_lease_lost name=%s", lease.name)


def reset_local_leases() -> None:
    _local_leases.clear()


@asynccontextmanager
async def keyed_lock(key: str) -> AsyncIterator[None]:
    # Serialize writers on one entity inside this process; the compare-and-set guards across processes.
    loop = asyncio.get_running_loop()
    locks = _keyed_locks.setdefault(loop, {})
    entry = locks.get(key)
    if entry is None:
        entry = locks[key] = _KeyedLock(asyncio.Lock())
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        # Drop the lock with its last holder or waiter so idle keys do not accumulate.
        entry.users -= 1
        if entry.users == 0 and locks.get(key) is entry:
            del locks[key]


def active_lock_keys() -> list[str]:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return []
    return sorted(_keyed_locks.get(loop, {}))
