"""
Redis-backed data adapter.
"""

from typing import Iterable, Optional

import redis.asyncio as redis

from shared.errors import AccessLayerException
from shared.logging import get_logger
from .data_adapter import AdapterResponse, DataAdapter


class RedisDataAdapter(DataAdapter):
    """Stores each key as a Redis hash holding the value and its sync time."""

    VALUE_FIELD = "value"
    TIME_FIELD = "time"

    def __init__(self, redis_url: str, key_prefix: str = "", polling_keys: Iterable[str] = ()):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.polling_keys = frozenset(polling_keys)
        self.logger = get_logger("flags.adapters.redis")
        self.redis: Optional[redis.Redis] = None

    async def initialize(self) -> None:
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis data adapter started")
        except Exception as e:
            self.logger.error("Failed to start Redis data adapter", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e))

    async def shutdown(self) -> None:
        if self.redis:
            await self.redis.close()
            self.redis = None
            self.logger.info("Redis data adapter stopped")

    async def get(self, key: str) -> AdapterResponse:
        if self.redis is None:
            return AdapterResponse(error=AccessLayerException("REDIS_NOT_STARTED", "Redis data adapter not initialized"))
        try:
            stored = await self.redis.hgetall(self._key(key))
        except Exception as e:
            self.logger.error("Error reading from data adapter", key=key, error=str(e))
            return AdapterResponse(error=e)

        if not stored or self.VALUE_FIELD not in stored:
            return AdapterResponse(error=KeyError(key))
        time_raw = stored.get(self.TIME_FIELD)
        return AdapterResponse(
            result=stored[self.VALUE_FIELD],
            time=int(time_raw) if time_raw else None,
        )

    async def set(self, key: str, value: str, time: Optional[int] = None) -> None:
        if self.redis is None:
            return
        mapping = {self.VALUE_FIELD: value}
        if time is not None:
            mapping[self.TIME_FIELD] = str(time)
        try:
            await self.redis.hset(self._key(key), mapping=mapping)
            self.logger.debug("Data adapter value stored", key=key, size=len(value))
        except Exception as e:
            self.logger.error("Error writing to data adapter", key=key, error=str(e))

    def supports_polling_updates_for(self, key: str) -> bool:
        return key in self.polling_keys

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"
