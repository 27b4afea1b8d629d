"""Logging setup shared by the CLI and the document store server.

Controlled by env:
- CHATSYNC_LOG_LEVEL: DEBUG/INFO/WARNING/ERROR (default INFO)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _parse_log_level(level_name: Optional[str]) -> int:
    if not level_name:
        return logging.INFO
    name = level_name.strip().upper()
    level = getattr(logging, name, logging.INFO)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level_name: Optional[str] = None) -> int:
    """Install one stream handler on the root logger and return the level used."""

    level = _parse_log_level(level_name or os.getenv("CHATSYNC_LOG_LEVEL", "INFO"))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    else:
        for handler in root.handlers:
            handler.setFormatter(formatter)
    root.setLevel(level)
    for handler in root.handlers:
        handler.setLevel(level)

    logging.getLogger("aiohttp.access").setLevel(max(level, logging.WARNING))
    return level
