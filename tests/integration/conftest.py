"""
Integration fixtures against a live Redis server.

These tests require a reachable Redis (REDIS_URL, default
redis://localhost:6379/15). Every test works under its own key prefix,
which is deleted afterwards.
"""

import dataclasses
import os
import uuid

import pytest
import pytest_asyncio

from kvdocs import DocumentManager, MetadataRegistry, OdmConfig, RedisClientAdapter
from tests.documents import ARTICLE, USER

REDIS_ENABLED = os.environ.get("KVDOCS_REDIS_TESTS", "0") == "1"
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/15")

pytestmark = pytest.mark.skipif(
    not REDIS_ENABLED,
    reason="Redis tests disabled. Set KVDOCS_REDIS_TESTS=1 to enable.",
)


@pytest.fixture
def prefix():
    return f"kvdocs-test-{uuid.uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def redis_client(prefix):
    """Redis adapter; deletes every key under the test prefix on teardown."""
    adapter = RedisClientAdapter.from_url(REDIS_URL)
    yield adapter

    cursor = 0
    while True:
        cursor, keys = await adapter.scan(cursor, match=f"{prefix}:*", count=500)
        if keys:
            await adapter.delete(*keys)
        if cursor == 0:
            break
    await adapter.close()


@pytest.fixture
def redis_registry(prefix):
    registry = MetadataRegistry()
    registry.register(dataclasses.replace(ARTICLE, prefix=prefix))
    registry.register(dataclasses.replace(USER, prefix=prefix))
    return registry


@pytest.fixture
def redis_manager(redis_client, redis_registry):
    return DocumentManager(redis_client, redis_registry, OdmConfig(scan_count=50, batch_size=10))
