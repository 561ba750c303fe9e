"""
Variable Store

Durable storage for global- and workflow-scoped variables. Global values
are shared by every execution of every workflow: writes are last-write-wins
and atomic per key. A value may carry a TTL; once it elapses the value is
no longer loaded.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from ..exceptions import ServiceUnavailableError
from ..logging_config import get_logger
from ..workflows.retry import retry_with_backoff

logger = get_logger(__name__)


class VariableStore(ABC):
    """Persistent variable storage keyed by (scope, workflow_id)."""

    @abstractmethod
    async def load(self, scope: str, workflow_id: Optional[str]) -> Dict[str, Any]:
        """All live values of a scope (``workflow_id`` is None for global)."""

    @abstractmethod
    async def set(
        self,
        scope: str,
        workflow_id: Optional[str],
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """Write one value, replacing any earlier TTL."""

    @abstractmethod
    async def delete(self, scope: str, workflow_id: Optional[str], key: str) -> None:
        """Remove one value."""

    async def ttls(self, scope: str, workflow_id: Optional[str], keys: List[str]) -> Dict[str, float]:
        """Remaining seconds of the given keys that carry a TTL."""
        return {}

    async def close(self) -> None:
        """Release connections."""


class InMemoryVariableStore(VariableStore):
    """Process-local variable store."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[Tuple[str, Optional[str]], Dict[str, str]] = {}
        self._expires_at: Dict[Tuple[str, Optional[str], str], float] = {}

    def _alive(self, scope: str, workflow_id: Optional[str], key: str) -> bool:
        expires_at = self._expires_at.get((scope, workflow_id, key))
        if expires_at is None or self._clock() < expires_at:
            return True
        self._data.get((scope, workflow_id), {}).pop(key, None)
        del self._expires_at[(scope, workflow_id, key)]
        return False

    async def load(self, scope: str, workflow_id: Optional[str]) -> Dict[str, Any]:
        stored = self._data.get((scope, workflow_id), {})
        return {
            key: json.loads(raw)
            for key, raw in list(stored.items())
            if self._alive(scope, workflow_id, key)
        }

    async def set(
        self,
        scope: str,
        workflow_id: Optional[str],
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self._data.setdefault((scope, workflow_id), {})[key] = json.dumps(value, default=str)
        if ttl_seconds is None:
            self._expires_at.pop((scope, workflow_id, key), None)
        else:
            self._expires_at[(scope, workflow_id, key)] = self._clock() + ttl_seconds

    async def delete(self, scope: str, workflow_id: Optional[str], key: str) -> None:
        self._data.get((scope, workflow_id), {}).pop(key, None)
        self._expires_at.pop((scope, workflow_id, key), None)

    async def ttls(self, scope: str, workflow_id: Optional[str], keys: List[str]) -> Dict[str, float]:
        now = self._clock()
        remaining = {}
        for key in keys:
            expires_at = self._expires_at.get((scope, workflow_id, key))
            if expires_at is not None and expires_at > now:
                remaining[key] = expires_at - now
        return remaining


class RedisVariableStore(VariableStore):
    """
    Redis-backed variable store

    One hash per (scope, workflow_id); each variable is a JSON-encoded field,
    so HSET gives atomic per-key last-write-wins. TTLs use hash-field
    expiration (HPEXPIRE, Redis 7.4+); Redis drops expired fields itself and
    an overwriting HSET clears a field's TTL.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "workflow_engine:variables"):
        """
        Initialize Redis variable store

        Args:
            redis_client: Async Redis client instance
            key_prefix: Namespace for variable hashes
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._max_retries = 3
        self._retry_delay = 0.5

    @classmethod
    def from_url(cls, url: str, max_connections: int = 50) -> "RedisVariableStore":
        client = redis.from_url(url, decode_responses=True, max_connections=max_connections)
        return cls(client)

    def _key(self, scope: str, workflow_id: Optional[str]) -> str:
        if workflow_id is None:
            return f"{self.key_prefix}:{scope}"
        return f"{self.key_prefix}:{scope}:{workflow_id}"

    async def _execute(self, operation, *args):
        """Run a Redis command, retrying connection/timeouts with backoff."""
        try:
            return await retry_with_backoff(
                lambda: operation(*args),
                max_retries=self._max_retries,
                base_delay=self._retry_delay,
                jitter=False,
                exceptions=(ConnectionError, TimeoutError),
                operation=f"redis.{getattr(operation, '__name__', 'command')}",
            )
        except (ConnectionError, TimeoutError) as e:
            raise ServiceUnavailableError("Redis", details={"error": str(e)}) from e
        except RedisError as e:
            logger.error("Redis error", error=str(e))
            raise

    async def load(self, scope: str, workflow_id: Optional[str]) -> Dict[str, Any]:
        raw = await self._execute(self.redis.hgetall, self._key(scope, workflow_id))
        values = {}
        for key, encoded in (raw or {}).items():
            if isinstance(key, bytes):
                key = key.decode()
            try:
                values[key] = json.loads(encoded)
            except (TypeError, ValueError):
                logger.warning("Undecodable variable value", scope=scope, workflow_id=workflow_id, key=key)
        return values

    async def set(
        self,
        scope: str,
        workflow_id: Optional[str],
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        name = self._key(scope, workflow_id)
        await self._execute(self.redis.hset, name, key, json.dumps(value, default=str))
        if ttl_seconds is not None:
            await self._execute(self.redis.hpexpire, name, max(1, int(ttl_seconds * 1000)), key)

    async def delete(self, scope: str, workflow_id: Optional[str], key: str) -> None:
        await self._execute(self.redis.hdel, self._key(scope, workflow_id), key)

    async def ttls(self, scope: str, workflow_id: Optional[str], keys: List[str]) -> Dict[str, float]:
        if not keys:
            return {}
        # -1: no TTL, -2: no such field
        millis = await self._execute(self.redis.hpttl, self._key(scope, workflow_id), *keys)
        return {key: ms / 1000 for key, ms in zip(keys, millis or []) if ms is not None and ms > 0}

    async def close(self) -> None:
        await self.redis.aclose()
