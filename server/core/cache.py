"""Cache service with Redis (production) or SQLite (development) backend.

The execution engine keeps durable step results and heartbeats here.
SQLite is sufficient for single-process deployments; Redis is required when
several API or worker processes drive executions concurrently.
"""

import json
import time
from typing import Any, Dict, Optional, List, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or SQLite backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - SQLite: When Redis is disabled or unreachable and a Database is given
    - Memory: Fallback for tests and ephemeral runs (honours TTLs)
    """

    def __init__(self, settings: Settings, database: Optional["Database"] = None):
        self.settings = settings
        self.database = database
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        self.use_sqlite = not self.use_redis and database is not None
        self._streams_available = False

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
                await self._check_streams_support()

            except Exception as e:
                logger.warning("Redis connection failed, falling back", error=str(e))
                self.use_redis = False
                self.redis = None
                if self.database:
                    self.use_sqlite = True
                    logger.info("Using SQLite cache (Redis fallback)")
        elif self.use_sqlite:
            logger.info("Using SQLite cache")
        else:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def _check_streams_support(self):
        """Try XADD once so event waits can pick their backend at startup."""
        test_stream = "_workflow_streams_test"
        try:
            msg_id = await self.redis.xadd(test_stream, {"test": "1"}, maxlen=1)
            await self.redis.delete(test_stream)
            self._streams_available = bool(msg_id)
        except Exception as e:
            self._streams_available = False
            logger.warning("Redis Streams unavailable, event waits use memory mode", error=str(e))

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.close()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()

    # ============================================================================
    # Memory backend helpers
    # ============================================================================

    def _memory_get(self, key: str) -> Optional[Any]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at < time.time():
            self.memory_cache.pop(key, None)
            return None
        return value

    def _memory_set(self, key: str, value: Any, ttl: Optional[int]) -> None:
        expires_at = time.time() + ttl if ttl else None
        self.memory_cache[key] = (value, expires_at)

    # ============================================================================
    # Key/value operations
    # ============================================================================

    async def get(self, key: str, strict: bool = False) -> Optional[Any]:
        """Get value from cache.

        Backend errors read as a miss unless `strict`, in which case they propagate.
        """
        try:
            if self.use_redis and self.redis:
                value = await self.redis.get(key)
            elif self.use_sqlite and self.database:
                value = await self.database.get_cache_entry(key, strict=strict)
            else:
                value = self._memory_get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return value

            log_cache_operation(logger, "get", key, hit=value is not None)
            return json.loads(value) if value is not None else None

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            if strict:
                raise
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, strict: bool = False) -> bool:
        """Set value in cache with optional TTL. With `strict`, backend errors propagate."""
        try:
            ttl = ttl or self.settings.cache_ttl

            if self.use_redis and self.redis:
                await self.redis.setex(key, ttl, json.dumps(value, default=str))
            elif self.use_sqlite and self.database:
                stored = await self.database.set_cache_entry(key, json.dumps(value, default=str), ttl,
                                                           strict=strict)
                if not stored:
                    return False
            else:
                self._memory_set(key, value, ttl)

            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            if strict:
                raise
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.use_redis and self.redis:
                deleted = bool(await self.redis.delete(key))
            elif self.use_sqlite and self.database:
                deleted = await self.database.delete_cache_entry(key)
            else:
                deleted = self.memory_cache.pop(key, None) is not None

            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    # ============================================================================
    # Set operations (active execution tracking)
    # ============================================================================

    async def set_add(self, key: str, member: str) -> bool:
        try:
            if self.use_redis and self.redis:
                await self.redis.sadd(key, member)
                return True
            members = set(await self.get(key) or [])
            members.add(member)
            return await self.set(key, sorted(members), ttl=self.settings.step_result_ttl)
        except Exception as e:
            logger.error("Cache set add failed", key=key, error=str(e))
            return False

    async def set_remove(self, key: str, member: str) -> bool:
        try:
            if self.use_redis and self.redis:
                await self.redis.srem(key, member)
                return True
            members = set(await self.get(key) or [])
            members.discard(member)
            return await self.set(key, sorted(members), ttl=self.settings.step_result_ttl)
        except Exception as e:
            logger.error("Cache set remove failed", key=key, error=str(e))
            return False

    async def set_members(self, key: str) -> List[str]:
        try:
            if self.use_redis and self.redis:
                return sorted(await self.redis.smembers(key))
            return list(await self.get(key) or [])
        except Exception as e:
            logger.error("Cache set members failed", key=key, error=str(e))
            return []

    # ============================================================================
    # Redis Streams (event history and event waits)
    # ============================================================================

    async def stream_add(self, stream: str, data: Dict[str, Any], maxlen: int = 1000) -> Optional[str]:
        """Append a message to a Redis Stream. Returns the message id or None."""
        try:
            if self.is_streams_available():
                serialized = {k: json.dumps(v, default=str) for k, v in data.items()}
                return await self.redis.xadd(stream, serialized, maxlen=maxlen, approximate=True)
            return None
        except Exception as e:
            logger.error("Stream add failed", stream=stream, error=str(e))
            return None

    async def stream_create_group(self, stream: str, group: str, start_id: str = "$") -> bool:
        """Create a consumer group, treating an existing group as success."""
        try:
            if self.is_streams_available():
                try:
                    await self.redis.xgroup_create(stream, group, start_id, mkstream=True)
                except Exception as e:
                    if "BUSYGROUP" not in str(e):
                        raise
                return True
            return False
        except Exception as e:
            logger.error("Stream create group failed", stream=stream, group=group, error=str(e))
            return False

    async def stream_read_group(self, group: str, consumer: str, streams: Dict[str, str],
                                count: int = 1, block: Optional[int] = None) -> Optional[List[Any]]:
        try:
            if self.is_streams_available():
                return await self.redis.xreadgroup(group, consumer, streams, count=count, block=block)
            return None
        except Exception as e:
            if "timeout" in str(e).lower():
                logger.debug("Stream read group timeout", group=group, consumer=consumer)
            else:
                logger.error("Stream read group failed", group=group, consumer=consumer, error=str(e))
            return None

    async def stream_ack(self, stream: str, group: str, *msg_ids: str) -> int:
        try:
            if self.is_streams_available():
                return await self.redis.xack(stream, group, *msg_ids)
            return 0
        except Exception as e:
            logger.error("Stream ack failed", stream=stream, group=group, error=str(e))
            return 0

    async def stream_destroy_group(self, stream: str, group: str) -> bool:
        try:
            if self.is_streams_available():
                await self.redis.xgroup_destroy(stream, group)
                return True
            return False
        except Exception as e:
            logger.error("Stream destroy group failed", stream=stream, group=group, error=str(e))
            return False

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None

    def is_streams_available(self) -> bool:
        """Check if Redis Streams were detected at startup."""
        return self.is_redis_available() and self._streams_available

    def backend_name(self) -> str:
        if self.is_redis_available():
            return "redis"
        return "sqlite" if self.use_sqlite else "memory"
