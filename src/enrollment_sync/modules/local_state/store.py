"""
Local State Stores

Durable key-value storage for client-resident state. Records are JSON
strings addressed by (namespace, key) and ordered by a sort key.

Two implementations share one interface:
- SqlStateStore: SQLAlchemy async session per call, committed before return
- RedisStateStore: one hash plus one sorted set per namespace, written in
  MULTI/EXEC pipelines

Any storage failure is raised as StateStoreError so callers can tell
"could not persist" apart from every other problem.
"""

import abc
import logging
from datetime import datetime

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import repository

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when the durable store cannot be read or written."""

    def __init__(self, message: str, operation: str):
        self.message = message
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class StateStore(abc.ABC):
    """Interface for namespaced, ordered JSON record storage."""

    @abc.abstractmethod
    async def get(self, namespace: str, key: str) -> str | None: ...

    @abc.abstractmethod
    async def put(self, namespace: str, key: str, payload: str, sort_key: datetime) -> None:
        """Atomically insert or replace a record. Durable once this returns."""

    @abc.abstractmethod
    async def delete(self, namespace: str, key: str) -> bool: ...

    @abc.abstractmethod
    async def move(
        self,
        source: str,
        target: str,
        key: str,
        payload: str,
        sort_key: datetime,
    ) -> bool:
        """
        Atomically write `payload` under `target` and drop `key` from `source`.

        Either both changes are durable or neither is. Returns True if the
        record was present in `source`.
        """

    @abc.abstractmethod
    async def list_records(
        self,
        namespace: str,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[str]: ...

    @abc.abstractmethod
    async def count(self, namespace: str) -> int: ...

    @abc.abstractmethod
    async def evict_oldest(self, namespace: str, keep: int) -> int:
        """Remove the oldest records so that at most `keep` remain."""

    @abc.abstractmethod
    async def clear(self, namespace: str) -> int: ...


class SqlStateStore(StateStore):
    """State store on the local_state table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, namespace: str, key: str) -> str | None:
        try:
            async with self._session_maker() as db:
                record = await repository.get(db, namespace, key)
                return record.payload if record else None
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(str(e), "get") from e

    async def put(self, namespace: str, key: str, payload: str, sort_key: datetime) -> None:
        try:
            async with self._session_maker() as db:
                await repository.upsert(db, namespace, key, payload, sort_key)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to persist {namespace}/{key}: {e}")
            raise StateStoreError(str(e), "put") from e

    async def delete(self, namespace: str, key: str) -> bool:
        try:
            async with self._session_maker() as db:
                return await repository.delete_record(db, namespace, key)
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(str(e), "delete") from e

    async def move(
        self,
        source: str,
        target: str,
        key: str,
        payload: str,
        sort_key: datetime,
    ) -> bool:
        try:
            async with self._session_maker() as db:
                return await repository.move_record(db, source, target, key, payload, sort_key)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to move {source}/{key} to {target}: {e}")
            raise StateStoreError(str(e), "move") from e

    async def list_records(
        self,
        namespace: str,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[str]:
        try:
            async with self._session_maker() as db:
                records = await repository.list_namespace(db, namespace, newest_first, limit)
                return [record.payload for record in records]
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(str(e), "list") from e

    async def count(self, namespace: str) -> int:
        try:
            async with self._session_maker() as db:
                return await repository.count_namespace(db, namespace)
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(str(e), "count") from e

    async def evict_oldest(self, namespace: str, keep: int) -> int:
        try:
            async with self._session_maker() as db:
                return await repository.delete_oldest(db, namespace, keep)
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(str(e), "evict") from e

    async def clear(self, namespace: str) -> int:
        try:
            async with self._session_maker() as db:
                return await repository.clear_namespace(db, namespace)
        except (SQLAlchemyError, OSError) as e:
            raise StateStoreError(str(e), "clear") from e


class RedisStateStore(StateStore):
    """
    State store on Redis.

    Layout per namespace:
        {prefix}:{namespace}        hash   key -> payload
        {prefix}:{namespace}:order  zset   key scored by sort_key timestamp
    """

    def __init__(self, redis: Redis, prefix: str = "enrollment_sync"):
        self._redis = redis
        self._prefix = prefix

    def _hash_key(self, namespace: str) -> str:
        return f"{self._prefix}:{namespace}"

    def _order_key(self, namespace: str) -> str:
        return f"{self._prefix}:{namespace}:order"

    async def get(self, namespace: str, key: str) -> str | None:
        try:
            return await self._redis.hget(self._hash_key(namespace), key)
        except (RedisError, OSError) as e:
            raise StateStoreError(str(e), "get") from e

    async def put(self, namespace: str, key: str, payload: str, sort_key: datetime) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._hash_key(namespace), key, payload)
                pipe.zadd(self._order_key(namespace), {key: sort_key.timestamp()})
                await pipe.execute()
        except (RedisError, OSError) as e:
            logger.error(f"Failed to persist {namespace}/{key}: {e}")
            raise StateStoreError(str(e), "put") from e

    async def delete(self, namespace: str, key: str) -> bool:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hdel(self._hash_key(namespace), key)
                pipe.zrem(self._order_key(namespace), key)
                removed, _ = await pipe.execute()
            return removed > 0
        except (RedisError, OSError) as e:
            raise StateStoreError(str(e), "delete") from e

    async def move(
        self,
        source: str,
        target: str,
        key: str,
        payload: str,
        sort_key: datetime,
    ) -> bool:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hdel(self._hash_key(source), key)
                pipe.zrem(self._order_key(source), key)
                pipe.hset(self._hash_key(target), key, payload)
                pipe.zadd(self._order_key(target), {key: sort_key.timestamp()})
                removed, *_ = await pipe.execute()
            return removed > 0
        except (RedisError, OSError) as e:
            logger.error(f"Failed to move {source}/{key} to {target}: {e}")
            raise StateStoreError(str(e), "move") from e

    async def list_records(
        self,
        namespace: str,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[str]:
        end = -1 if limit is None else limit - 1
        try:
            if newest_first:
                keys = await self._redis.zrevrange(self._order_key(namespace), 0, end)
            else:
                keys = await self._redis.zrange(self._order_key(namespace), 0, end)
            if not keys:
                return []
            payloads = await self._redis.hmget(self._hash_key(namespace), keys)
        except (RedisError, OSError) as e:
            raise StateStoreError(str(e), "list") from e
        return [payload for payload in payloads if payload is not None]

    async def count(self, namespace: str) -> int:
        try:
            return int(await self._redis.zcard(self._order_key(namespace)))
        except (RedisError, OSError) as e:
            raise StateStoreError(str(e), "count") from e

    async def evict_oldest(self, namespace: str, keep: int) -> int:
        try:
            total = int(await self._redis.zcard(self._order_key(namespace)))
            excess = total - keep
            if excess <= 0:
                return 0
            oldest = await self._redis.zrange(self._order_key(namespace), 0, excess - 1)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hdel(self._hash_key(namespace), *oldest)
                pipe.zrem(self._order_key(namespace), *oldest)
                await pipe.execute()
            return len(oldest)
        except (RedisError, OSError) as e:
            raise StateStoreError(str(e), "evict") from e

    async def clear(self, namespace: str) -> int:
        try:
            total = int(await self._redis.zcard(self._order_key(namespace)))
            await self._redis.delete(self._hash_key(namespace), self._order_key(namespace))
            return total
        except (RedisError, OSError) as e:
            raise StateStoreError(str(e), "clear") from e
