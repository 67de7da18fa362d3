"""
TTL-keyed state store shared by every broker instance.

Records are addressed by (namespace, key) where the key is a secret capability.
There is no read-then-delete and no compare-and-swap: writes are last-write-wins
and a concurrent reader may see a record that another request already consumed.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Optional, Type, TypeVar, Union

import cbor2
from pydantic import TypeAdapter, ValidationError
from redis.asyncio import Redis

from oidc_broker.config import Settings
from oidc_broker.logging_util import get_logger
from oidc_broker.utils.exceptions import StateDeserializationError

logger = get_logger(__name__)

T = TypeVar("T")

Ttl = Union[int, timedelta]


def _ttl_seconds(ttl: Ttl) -> int:
    seconds = int(ttl.total_seconds()) if isinstance(ttl, timedelta) else int(ttl)
    if seconds <= 0:
        raise ValueError("ttl must be at least one second")
    return seconds


class KeyValueStore(ABC):
    """Raw byte storage with per-entry expiry."""

    @abstractmethod
    async def put_bytes(self, namespace: str, key: str, data: bytes, ttl_in_sec: int) -> None:
        """Store `data`, replacing any previous value and restarting its expiry."""

    @abstractmethod
    async def get_bytes(self, namespace: str, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when absent or expired."""

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> None:
        """Remove the entry. Deleting a missing entry is not an error."""


class InMemoryStore(KeyValueStore):
    """Single-process backend, suitable for development and tests."""

    def __init__(self):
        self._data: dict[tuple[str, str], tuple[float, bytes]] = {}

    async def put_bytes(self, namespace: str, key: str, data: bytes, ttl_in_sec: int) -> None:
        self._data[(namespace, key)] = (time.monotonic() + ttl_in_sec, data)

    async def get_bytes(self, namespace: str, key: str) -> Optional[bytes]:
        entry = self._data.get((namespace, key))
        if entry is None:
            return None
        expires_at, data = entry
        if expires_at <= time.monotonic():
            return None
        return data

    async def delete(self, namespace: str, key: str) -> None:
        self._data.pop((namespace, key), None)

    def cleanup_expired(self) -> int:
        """Removes expired entries and returns how many were dropped."""
        now = time.monotonic()
        expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
        for k in expired:
            del self._data[k]
        return len(expired)


class RedisStore(KeyValueStore):
    def __init__(self, client: Redis):
        self.client = client

    @staticmethod
    def _get_key(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    async def put_bytes(self, namespace: str, key: str, data: bytes, ttl_in_sec: int) -> None:
        await self.client.set(self._get_key(namespace, key), data, ex=ttl_in_sec)

    async def get_bytes(self, namespace: str, key: str) -> Optional[bytes]:
        return await self.client.get(self._get_key(namespace, key))

    async def delete(self, namespace: str, key: str) -> None:
        await self.client.delete(self._get_key(namespace, key))


class StateStore:
    """
    Typed facade over a KeyValueStore.

    Values (pydantic models or plain JSON-compatible values) are dumped to
    their JSON-mode python form and encoded as CBOR, which keeps every record
    small and self-describing. `get` validates the decoded payload against the
    requested type and raises StateDeserializationError on any mismatch.
    """

    def __init__(self, backend: KeyValueStore):
        self.backend = backend
        self._adapters: dict[Any, TypeAdapter] = {}

    def _adapter(self, type_: Any) -> TypeAdapter:
        adapter = self._adapters.get(type_)
        if adapter is None:
            adapter = self._adapters[type_] = TypeAdapter(type_)
        return adapter

    async def put(self, namespace: str, key: str, value: Any, ttl: Ttl) -> None:
        payload = self._adapter(type(value)).dump_python(value, mode="json")
        await self.backend.put_bytes(namespace, key, cbor2.dumps(payload), _ttl_seconds(ttl))

    async def get(self, namespace: str, key: str, type_: Type[T]) -> Optional[T]:
        raw = await self.backend.get_bytes(namespace, key)
        if raw is None:
            return None
        try:
            payload = cbor2.loads(raw)
            return self._adapter(type_).validate_python(payload)
        except (cbor2.CBORDecodeError, ValidationError) as e:
            raise StateDeserializationError(
                f'Stored value in "{namespace}" does not decode as {getattr(type_, "__name__", type_)}'
            ) from e

    async def delete(self, namespace: str, key: str) -> None:
        await self.backend.delete(namespace, key)


class PersistenceFactory:
    @staticmethod
    async def create() -> StateStore:
        if Settings.STORAGE_BACKEND == "redis":
            from oidc_broker.sdk.redis_client import RedisClientSingleton

            logger.info(f"Using redis state store at {Settings.REDIS_HOST}:{Settings.REDIS_PORT}")
            return StateStore(RedisStore(await RedisClientSingleton.get_client()))

        logger.info("Using in-memory state store")
        return StateStore(InMemoryStore())


async def ttl_cleanup_task(store: InMemoryStore, interval_in_sec: float = 60):
    logger.debug("Starting TTL cleanup task for in-memory state store")
    while True:
        try:
            removed = store.cleanup_expired()
            if removed:
                logger.debug(f"Dropped {removed} expired state entries")
        except Exception:
            logger.exception("TTL cleanup failed")
        await asyncio.sleep(interval_in_sec)
