"""
Redis connection holder for the document store.

Connects lazily on first use. An unconfigured or unreachable server yields
None so ``create_document_store`` can fall back to the in-memory backend.
"""

import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from tenancy.utils.logging import redact_sensitive_data

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client with lazy connection and reconnect support."""

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None) -> None:
        if redis_url is None or key_prefix is None:
            from tenancy.config import get_settings

            settings = get_settings().redis
            redis_url = settings.redis_url if redis_url is None else redis_url
            key_prefix = settings.redis_key_prefix if key_prefix is None else key_prefix
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._client: Optional[redis.Redis] = None
        self._connection_error: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self._client is not None

    @property
    def last_error(self) -> Optional[str]:
        return self._connection_error

    async def get_client(self) -> Optional[redis.Redis]:
        """
        Get the connected client, connecting on first use.

        Returns:
            The client, or None when Redis is not configured or the
            connection attempt failed.
        """
        if not self.redis_url:
            self._connection_error = "Redis not configured"
            return None
        if self._client is not None:
            return self._client

        client = redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5.0,
            socket_timeout=5.0,
            retry_on_timeout=True,
        )
        try:
            await client.ping()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            self._connection_error = redact_sensitive_data(f"Redis connection failed: {e}")
            logger.warning(self._connection_error)
            return None

        self._client = client
        self._connection_error = None
        logger.info("Redis connection established", extra={"key_prefix": self.key_prefix})
        return self._client

    async def close(self) -> None:
        """Close the connection; safe to call when not connected."""
        if self._client is None:
            return
        try:
            await self._client.aclose()
            logger.info("Redis connection closed")
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")
        finally:
            self._client = None

    async def reconnect(self) -> bool:
        """Drop the current connection and connect again."""
        await self.close()
        return await self.get_client() is not None

    async def health_check(self) -> Dict[str, Any]:
        """
        Report connection health for the document store backend.

        Returns:
            ``status`` is one of healthy, unhealthy or unavailable.
        """
        client = await self.get_client()
        if client is None:
            return {
                "status": "unavailable",
                "connected": False,
                "error": self._connection_error,
                "url_configured": bool(self.redis_url),
            }

        try:
            await client.ping()
        except redis.ConnectionError as e:
            self._connection_error = redact_sensitive_data(str(e))
            return {
                "status": "unhealthy",
                "connected": False,
                "error": self._connection_error,
                "url_configured": True,
            }
        return {
            "status": "healthy",
            "connected": True,
            "key_prefix": self.key_prefix,
            "url_configured": True,
        }
