"""
Logging setup for ArtDB.

Library modules only ever call ``logging.getLogger(__name__)``; installing
handlers is left to the embedding application, which may call
``setup_logging`` once at startup.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ObservabilityConfig


def setup_logging(config: ObservabilityConfig | None = None) -> None:
    """Configure root logging based on configuration.

    Args:
        config: Observability configuration (loaded from env if not provided)
    """
    config = config or ObservabilityConfig.from_env()
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
