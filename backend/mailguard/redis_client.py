from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from mailguard.config import Settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """Long-lived, lazily established Redis handle shared across requests.

    ``get()`` returns ``None`` when Redis is not configured. After an error the
    caller calls ``reset()`` and the next ``get()`` builds a fresh client.
    """

    def __init__(
        self,
        url: str,
        connect_timeout: float = 10.0,
        socket_timeout: float = 2.0,
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.socket_timeout = socket_timeout
        self._client: aioredis.Redis | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisConnection":
        return cls(
            settings.redis_url,
            connect_timeout=settings.redis_connect_timeout_seconds,
            socket_timeout=settings.redis_operation_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def get(self) -> aioredis.Redis | None:
        if not self.configured:
            return None
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.socket_timeout,
            )
            logger.info("Redis client created for rate limiting")
        return self._client

    async def reset(self) -> None:
        """Drop the current client so the next call reconnects."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except (RedisError, OSError):
            logger.debug("Ignoring error while discarding Redis client", exc_info=True)

    async def ping(self) -> bool:
        try:
            client = self.get()
        except ValueError as e:
            logger.warning("Redis URL is not usable: %s", e)
            return False
        if client is None:
            return False
        try:
            return bool(await client.ping())
        except (RedisError, OSError):
            logger.warning("Redis ping failed", exc_info=True)
            await self.reset()
            return False

    async def close(self) -> None:
        await self.reset()
