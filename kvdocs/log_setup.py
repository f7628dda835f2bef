"""
Logging setup for applications using kvdocs.

The library itself only creates module loggers; applications call
``setup_logging`` once at startup.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import OdmConfig


def setup_logging(config: OdmConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Mapper configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
