"""Parsing helpers for configuration values.

Provides boolean parsing and tolerant numeric parsing for values read from
TOML files and environment variables.
"""

import logging
import os
from typing import Any, Optional

logger = logging.getLogger(__name__)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def _try_parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"true", "1", "yes", "on"}:
        return True
    if normalized in {"false", "0", "no", "off"}:
        return False
    return None


def _parse_int_env(name: str, default: int) -> int:
    """Read an integer environment variable, keeping ``default`` on bad input."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s: %r (keeping %s)", name, raw, default)
        return default


def _parse_float_env(name: str, default: float) -> float:
    """Read a float environment variable, keeping ``default`` on bad input."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: %r (keeping %s)", name, raw, default)
        return default
