"""Persistence port and its adapters."""

import redis.asyncio as redis

from .. import config
from .base import ExecutionStore
from .memory import InMemoryExecutionStore
from .redis_store import RedisExecutionStore

__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "RedisExecutionStore",
    "build_store",
]


def build_store(backend: str = None) -> ExecutionStore:
    backend = (backend or config.STORE_BACKEND).strip().lower()
    if backend == "memory":
        return InMemoryExecutionStore()
    if backend == "redis":
        client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            decode_responses=True,
        )
        return RedisExecutionStore(client, key_prefix=config.STORE_KEY_PREFIX)
    raise ValueError(f"Unknown store backend: {backend}")
