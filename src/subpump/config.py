"""
config.py — Configuration management.

Explicit arguments > SUBPUMP_* env vars > defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 8192
DEFAULT_CHUNK_SIZE = 8192
DEFAULT_DRAIN_GRACE = 1.0  # seconds pumpers may keep flushing after a forced kill


@dataclass
class Settings:
    buffer_size: int = DEFAULT_BUFFER_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE
    drain_grace: float = DEFAULT_DRAIN_GRACE
    log_level: str = "WARNING"


def _env_number(name: str, cast, default):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %r", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r, using %r", name, raw, default)
        return default
    return value


def get_config(
    buffer_size: int | None = None,
    chunk_size: int | None = None,
    drain_grace: float | None = None,
    log_level: str | None = None,
) -> Settings:
    """Merge explicit arguments > env vars > defaults."""
    return Settings(
        buffer_size=buffer_size or _env_number("SUBPUMP_BUFFER_SIZE", int, DEFAULT_BUFFER_SIZE),
        chunk_size=chunk_size or _env_number("SUBPUMP_CHUNK_SIZE", int, DEFAULT_CHUNK_SIZE),
        drain_grace=(
            drain_grace
            if drain_grace is not None
            else _env_number("SUBPUMP_DRAIN_GRACE", float, DEFAULT_DRAIN_GRACE)
        ),
        log_level=(log_level or os.environ.get("SUBPUMP_LOG_LEVEL") or "WARNING").upper(),
    )
