"""
Shared fixtures: a registry, an in-memory client on a fake clock and a manager.
"""

import pytest

from kvdocs import DocumentManager, InMemoryClientAdapter, MetadataRegistry, OdmConfig
from tests.documents import ARTICLE, USER, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(clock):
    """Fresh in-memory client on a fake clock."""
    return InMemoryClientAdapter(clock=clock)


@pytest.fixture
def registry():
    """Registry with Article and User registered."""
    registry = MetadataRegistry()
    registry.register(ARTICLE)
    registry.register(USER)
    return registry


@pytest.fixture
def config():
    return OdmConfig(scan_count=50, batch_size=10)


@pytest.fixture
def manager(client, registry, config):
    return DocumentManager(client, registry, config)
