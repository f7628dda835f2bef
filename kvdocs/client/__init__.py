"""
Store adapters.

This module provides the adapter interface the mapper talks to:
- Redis (redis.asyncio, for production)
- In-memory (for testing)

How to change safely:
    - New adapters must implement the ClientAdapter and Pipeline protocols
    - Transactional pipelines must apply all queued commands or none
"""

from .base import NEG_INF, POS_INF, ClientAdapter, Pipeline, format_bound, parse_bound
from .memory import InMemoryClientAdapter, InMemoryPipeline
from .redis import RedisClientAdapter, RedisPipeline

__all__ = [
    # Protocols
    "ClientAdapter",
    "Pipeline",
    # Score bounds
    "NEG_INF",
    "POS_INF",
    "format_bound",
    "parse_bound",
    # Implementations
    "RedisClientAdapter",
    "RedisPipeline",
    "InMemoryClientAdapter",
    "InMemoryPipeline",
]
