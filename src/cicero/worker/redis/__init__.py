"""Redis utilities for worker operations.

This package provides:
- LuaScripts: Centralized atomic Lua scripts for Redis operations
- get_redis: Factory function for the shared Redis client
- close_redis: Dispose the shared client on shutdown
"""

from cicero.worker.redis.client import close_redis, get_redis
from cicero.worker.redis.lua_scripts import LuaScripts

__all__ = [
    "LuaScripts",
    "close_redis",
    "get_redis",
]
