"""
Redis-backed persistent assignment storage.
"""

from typing import Optional

import redis
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from ..rules.models import StickyValues
from .sticky import UserPersistedValues, UserPersistentStorage


class RedisUserPersistentStorage(UserPersistentStorage):
    """One Redis hash per unit key: field = spec name, value = sticky JSON.

    Uses the blocking client since evaluation itself is synchronous.
    Errors propagate to the handler, which logs them and fails open.
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None,
                 key_prefix: str = "flags:sticky:"):
        if client is None and redis_url is None:
            raise ValueError("redis_url or client is required")
        self.redis = client or redis.Redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        self.key_prefix = key_prefix
        self.logger = get_logger("flags.persistence.redis")

    def load(self, key: str) -> UserPersistedValues:
        stored = self.redis.hgetall(self._key(key)) or {}
        values: UserPersistedValues = {}
        for spec_name, raw in stored.items():
            try:
                values[spec_name] = StickyValues.model_validate_json(raw)
            except PydanticValidationError as e:
                self.logger.warning("Discarding unreadable sticky value", key=key, spec=spec_name, error=str(e))
        return values

    def save(self, key: str, spec_name: str, data: StickyValues) -> None:
        self.redis.hset(self._key(key), spec_name, data.model_dump_json(by_alias=True))

    def delete(self, key: str, spec_name: str) -> None:
        self.redis.hdel(self._key(key), spec_name)

    def close(self) -> None:
        self.redis.close()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"
