"""
Revocation index for issued tokens.

The index holds a server-side shadow record for every token that has been
issued and not yet revoked. Presence of a record is the source of truth
for "not revoked"; signature verification alone never consults it.
"""

import hashlib
import json
import math
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as redis

from shared.logging import get_logger
from .models import TokenRecord


class TokenRevocationIndex(ABC):
    """Store of live (issued, not revoked) token records."""

    @abstractmethod
    async def add(self, record: TokenRecord, now: float) -> None:
        """Register a freshly issued token."""

    @abstractmethod
    async def get(self, token: str) -> Optional[TokenRecord]:
        """Return the record for ``token`` or None if unknown or revoked."""

    @abstractmethod
    async def remove(self, token: str) -> Optional[TokenRecord]:
        """Delete and return the record for ``token``; None if it was not present."""

    @abstractmethod
    async def purge_expired(self, now: float) -> int:
        """Drop records whose token has expired. Returns how many were removed."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backing store is reachable."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryTokenRevocationIndex(TokenRevocationIndex):
    """Process-local index backed by a lock-guarded dict."""

    def __init__(self):
        self._records: Dict[str, TokenRecord] = {}
        self._lock = threading.Lock()

    async def add(self, record: TokenRecord, now: float) -> None:
        with self._lock:
            self._records[record.token] = record

    async def get(self, token: str) -> Optional[TokenRecord]:
        with self._lock:
            return self._records.get(token)

    async def remove(self, token: str) -> Optional[TokenRecord]:
        with self._lock:
            return self._records.pop(token, None)

    async def purge_expired(self, now: float) -> int:
        with self._lock:
            expired = [token for token, record in self._records.items() if record.claims.is_expired(now)]
            for token in expired:
                del self._records[token]
            return len(expired)

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisTokenRevocationIndex(TokenRevocationIndex):
    """Index shared through Redis; records expire together with their token."""

    def __init__(self, redis_url: str, key_prefix: str = "token:"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("api.token_index")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _make_key(self, token: str) -> str:
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
        return f"{self.key_prefix}{digest}"

    async def add(self, record: TokenRecord, now: float) -> None:
        redis_client = await self._get_redis()
        ttl = max(1, math.ceil(record.claims.expires_at - now))
        await redis_client.setex(self._make_key(record.token), ttl, json.dumps(record.to_dict()))

    async def get(self, token: str) -> Optional[TokenRecord]:
        redis_client = await self._get_redis()
        raw = await redis_client.get(self._make_key(token))
        if raw is None:
            return None
        return TokenRecord.from_dict(json.loads(raw))

    async def remove(self, token: str) -> Optional[TokenRecord]:
        redis_client = await self._get_redis()
        key = self._make_key(token)
        async with redis_client.pipeline(transaction=True) as pipeline:
            pipeline.get(key)
            pipeline.delete(key)
            raw, deleted = await pipeline.execute()
        if raw is None or not deleted:
            return None
        return TokenRecord.from_dict(json.loads(raw))

    async def purge_expired(self, now: float) -> int:
        # Records carry a TTL matching the token expiry.
        return 0

    async def ping(self) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except Exception as e:
            self.logger.error("Token index ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
