"""
kvdocs test suite.

This package contains:
- unit/: Unit tests (in-memory client adapter, no external dependencies)
- integration/: Redis adapter tests (need a Redis server, KVDOCS_REDIS_TESTS=1)
"""
