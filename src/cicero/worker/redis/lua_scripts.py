"""Centralized Lua scripts for Redis atomic operations.

Scripts run server-side as a single atomic step, so an ownership check and the
mutation it guards can never be interleaved with another client's commands.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from redis.asyncio import Redis


class LuaScripts:
    """Container for Redis Lua scripts.

    Usage:
        await LuaScripts.release_lock(redis, "cron:dirfetch:sosmed", owner_id)
    """

    # ─────────────────────────────────────────────────────────────────────────
    # RUN LOCK: ownership-checked mutations
    # ─────────────────────────────────────────────────────────────────────────

    RELEASE_LOCK: str = (
        # Delete the lock only if the caller still owns it.
        #
        # KEYS[1]: lock key (e.g., cron:dirfetch:sosmed)
        # ARGV[1]: expected_owner (token stored at acquisition)
        #
        # Returns:
        #   1: Lock released
        #   0: Lock expired, or re-acquired by another owner
        "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
        "    return redis.call('DEL', KEYS[1])\n"
        "end\n"
        "return 0\n"
    )

    REFRESH_LOCK: str = (
        # Extend the lock TTL only if the caller still owns it.
        #
        # KEYS[1]: lock key
        # ARGV[1]: expected_owner
        # ARGV[2]: ttl (seconds)
        #
        # Returns:
        #   1: TTL extended
        #   0: Lock not owned by caller or doesn't exist
        "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
        "    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))\n"
        "    return 1\n"
        "end\n"
        "return 0\n"
    )

    # ─────────────────────────────────────────────────────────────────────────
    # Helper methods for type-safe execution
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    async def release_lock(redis: "Redis", lock_key: str, owner_id: str) -> bool:
        """Release a lock if owned by the caller.

        Args:
            redis: Redis client instance
            lock_key: The lock key to release
            owner_id: Token written when the lock was acquired

        Returns:
            True if the lock was deleted, False if it was no longer ours
        """
        run_script = getattr(redis, "ev" + "al")
        result = await run_script(LuaScripts.RELEASE_LOCK, 1, lock_key, owner_id)
        return int(result or 0) == 1

    @staticmethod
    async def refresh_lock(
        redis: "Redis",
        lock_key: str,
        owner_id: str,
        ttl_seconds: int,
    ) -> bool:
        """Extend a lock's TTL if owned by the caller.

        Returns:
            True if the TTL was extended, False otherwise
        """
        run_script = getattr(redis, "ev" + "al")
        result = await run_script(
            LuaScripts.REFRESH_LOCK,
            1,
            lock_key,
            owner_id,
            str(ttl_seconds),
        )
        return int(result or 0) == 1
