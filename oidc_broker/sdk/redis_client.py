import asyncio
from typing import Optional

from redis.asyncio import Redis

from oidc_broker.config import Settings


class RedisClientSingleton:
    """Process-wide async redis connection pool, created on first use."""

    _instance: Optional[Redis] = None
    _lock = asyncio.Lock()

    @classmethod
    async def get_client(cls) -> Redis:
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    client = Redis(
                        host=Settings.REDIS_HOST,
                        port=Settings.REDIS_PORT,
                        password=Settings.REDIS_PASSWORD,
                        # state records are CBOR bytes
                        decode_responses=False,
                        max_connections=35,
                    )
                    await client.ping()
                    cls._instance = client
        return cls._instance

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.aclose()
            cls._instance = None
