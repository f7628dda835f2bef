"""
Configuration management for kvdocs.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable; they are part of the interface
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedisConfig:
    """Connection settings for the Redis adapter.

    Attributes:
        url: Redis connection URL (redis://[:password@]host:port/db)
        socket_timeout: Socket timeout in seconds
    """

    url: str = "redis://localhost:6379/0"
    socket_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> RedisConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            socket_timeout=float(os.getenv("KVDOCS_SOCKET_TIMEOUT", "5")),
        )

    @property
    def redacted_url(self) -> str:
        """Connection URL with the password masked."""
        parts = urlsplit(self.url)
        if not parts.password:
            return self.url
        netloc = parts.hostname or ""
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        user = parts.username or ""
        return urlunsplit(parts._replace(netloc=f"{user}:***@{netloc}"))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json or text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass(frozen=True)
class OdmConfig:
    """Complete mapper configuration.

    Attributes:
        scan_count: COUNT hint for SCAN/SSCAN cursors
        batch_size: Default batch size for streaming and batch services
        intersection_ttl: Seconds a temporary intersection key may live
        redis: Redis connection settings
        observability: Logging settings
    """

    scan_count: int = 100
    batch_size: int = 100
    intersection_ttl: int = 30
    redis: RedisConfig = field(default_factory=RedisConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> OdmConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            scan_count=int(os.getenv("KVDOCS_SCAN_COUNT", "100")),
            batch_size=int(os.getenv("KVDOCS_BATCH_SIZE", "100")),
            intersection_ttl=int(os.getenv("KVDOCS_INTERSECTION_TTL", "30")),
            redis=RedisConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.scan_count <= 0:
            raise ValueError(f"KVDOCS_SCAN_COUNT must be positive, got {self.scan_count}")
        if self.batch_size <= 0:
            raise ValueError(f"KVDOCS_BATCH_SIZE must be positive, got {self.batch_size}")
        if self.intersection_ttl <= 0:
            raise ValueError(
                f"KVDOCS_INTERSECTION_TTL must be positive, got {self.intersection_ttl}"
            )
        if self.redis.socket_timeout <= 0:
            raise ValueError(
                f"KVDOCS_SOCKET_TIMEOUT must be positive, got {self.redis.socket_timeout}"
            )
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "kvdocs configuration loaded",
            extra={
                "redis_url": self.redis.redacted_url,
                "socket_timeout": self.redis.socket_timeout,
                "scan_count": self.scan_count,
                "batch_size": self.batch_size,
                "intersection_ttl": self.intersection_ttl,
                "log_level": self.observability.log_level,
            },
        )
