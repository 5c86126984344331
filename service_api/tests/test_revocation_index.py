"""
Unit tests for token revocation indexes.
"""

import hashlib
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_api.app.auth import (
    InMemoryTokenRevocationIndex,
    RedisTokenRevocationIndex,
    TokenClaims,
    TokenRecord,
)


@pytest.fixture
def record():
    claims = TokenClaims(
        organization_id="org-1",
        service_name="zapier",
        permissions=("messages:send",),
        issued_at=1000,
        expires_at=4600,
        token_id="abc123",
    )
    return TokenRecord(token="header.payload.signature", claims=claims)


class TestInMemoryTokenRevocationIndex:
    """Test cases for InMemoryTokenRevocationIndex."""

    @pytest.mark.asyncio
    async def test_add_get_remove(self, record):
        index = InMemoryTokenRevocationIndex()

        await index.add(record, 1000)
        assert await index.get(record.token) == record

        assert await index.remove(record.token) == record
        assert await index.get(record.token) is None
        assert await index.remove(record.token) is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, record):
        index = InMemoryTokenRevocationIndex()
        await index.add(record, 1000)

        assert await index.purge_expired(4599) == 0
        assert await index.purge_expired(4600) == 1
        assert len(index) == 0


class TestRedisTokenRevocationIndex:
    """Test cases for RedisTokenRevocationIndex."""

    @pytest.fixture
    def index(self):
        return RedisTokenRevocationIndex("redis://localhost:6379/0")

    def test_make_key_hashes_token(self, index):
        digest = hashlib.sha256(b"header.payload.signature").hexdigest()

        assert index._make_key("header.payload.signature") == f"token:{digest}"

    @pytest.mark.asyncio
    async def test_add_sets_ttl_to_expiry(self, index, record):
        with patch.object(index, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis

            await index.add(record, 1000.5)

            key, ttl, value = mock_redis.setex.await_args.args
            assert key == index._make_key(record.token)
            assert ttl == 3600
            assert json.loads(value) == record.to_dict()

    @pytest.mark.asyncio
    async def test_get(self, index, record):
        with patch.object(index, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_redis.get.return_value = json.dumps(record.to_dict())
            mock_get_redis.return_value = mock_redis

            assert await index.get(record.token) == record

    @pytest.mark.asyncio
    async def test_get_missing(self, index):
        with patch.object(index, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_redis.get.return_value = None
            mock_get_redis.return_value = mock_redis

            assert await index.get("unknown") is None

    @pytest.mark.asyncio
    async def test_remove(self, index, record):
        with patch.object(index, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_pipeline = MagicMock()
            mock_pipeline.execute = AsyncMock(return_value=[json.dumps(record.to_dict()), 1])
            mock_redis = MagicMock()
            mock_redis.pipeline.return_value.__aenter__.return_value = mock_pipeline
            mock_get_redis.return_value = mock_redis

            assert await index.remove(record.token) == record
            mock_pipeline.delete.assert_called_once_with(index._make_key(record.token))

    @pytest.mark.asyncio
    async def test_remove_missing(self, index):
        with patch.object(index, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_pipeline = MagicMock()
            mock_pipeline.execute = AsyncMock(return_value=[None, 0])
            mock_redis = MagicMock()
            mock_redis.pipeline.return_value.__aenter__.return_value = mock_pipeline
            mock_get_redis.return_value = mock_redis

            assert await index.remove("unknown") is None
