"""Run-level mutual exclusion using a Redis distributed lock.

Ensures only ONE scheduled fetch run executes across all worker processes.
Uses Redis SET NX with TTL so a crashed holder cannot block later runs forever.
"""

from __future__ import annotations

import os
import secrets
import socket
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Literal, Optional

from cicero.main.logging import get_logger
from cicero.worker.redis.lua_scripts import LuaScripts

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)

LockReason = Literal["acquired", "lock_held", "lock_error"]


def generate_owner_id() -> str:
    """Token stored as the lock value. Never reused across acquisitions."""
    return f"{socket.gethostname()}:{os.getpid()}:{secrets.token_hex(8)}"


async def _noop() -> bool:
    return False


@dataclass
class LockHandle:
    """Result of an acquisition attempt.

    ``release`` and ``refresh`` are always safe to await: for a handle that was
    not acquired they do nothing and return False.
    """

    acquired: bool
    key: str
    owner_id: Optional[str]
    ttl_seconds: int
    reason: LockReason
    _release: Callable[[], Awaitable[bool]] = field(default=_noop, repr=False)
    _refresh: Callable[[], Awaitable[bool]] = field(default=_noop, repr=False)

    async def release(self) -> bool:
        return await self._release()

    async def refresh(self) -> bool:
        """Push the expiry back to a full TTL while still owned."""
        return await self._refresh()


class DistributedLock:
    """Redis-based lock with ownership token and atomic compare-and-delete release.

    Backend errors fail closed: the caller sees ``acquired=False`` with reason
    ``lock_error`` and must skip the guarded work.

    Args:
        redis_client: Async Redis connection.
    """

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    async def acquire(self, key: str, ttl_seconds: int) -> LockHandle:
        owner_id = generate_owner_id()
        try:
            acquired = await self._redis.set(key, owner_id, nx=True, ex=ttl_seconds)
        except Exception as exc:
            logger.warning(
                "Failed to acquire distributed lock, skipping guarded work",
                extra={"error": str(exc), "lock_key": key},
            )
            return LockHandle(
                acquired=False,
                key=key,
                owner_id=None,
                ttl_seconds=ttl_seconds,
                reason="lock_error",
            )

        if not acquired:
            logger.info("Distributed lock already held", extra={"lock_key": key})
            return LockHandle(
                acquired=False,
                key=key,
                owner_id=None,
                ttl_seconds=ttl_seconds,
                reason="lock_held",
            )

        async def _release() -> bool:
            return await self.release(key, owner_id)

        async def _refresh() -> bool:
            return await self.refresh(key, owner_id, ttl_seconds)

        logger.debug(
            "Distributed lock acquired",
            extra={"lock_key": key, "ttl_seconds": ttl_seconds},
        )
        return LockHandle(
            acquired=True,
            key=key,
            owner_id=owner_id,
            ttl_seconds=ttl_seconds,
            reason="acquired",
            _release=_release,
            _refresh=_refresh,
        )

    async def release(self, key: str, owner_id: str) -> bool:
        """Release the lock if ``owner_id`` still holds it.

        Returns:
            True if the lock was deleted, False if it expired, changed owner or
            the backend could not be reached.
        """
        try:
            released = await LuaScripts.release_lock(self._redis, key, owner_id)
        except Exception as exc:
            logger.warning(
                "Failed to release distributed lock, it will expire on its own",
                extra={"error": str(exc), "lock_key": key},
            )
            return False

        if not released:
            logger.warning(
                "Distributed lock was no longer owned at release time",
                extra={"lock_key": key},
            )
        return released

    async def refresh(self, key: str, owner_id: str, ttl_seconds: int) -> bool:
        """Extend the TTL if ``owner_id`` still holds the lock."""
        try:
            return await LuaScripts.refresh_lock(self._redis, key, owner_id, ttl_seconds)
        except Exception as exc:
            logger.debug(
                "Failed to refresh distributed lock",
                extra={"error": str(exc), "lock_key": key},
            )
            return False
