"""Environment variable helpers."""

from __future__ import annotations

import os
from typing import Callable, Dict, List, Optional, TypeVar

from core.logging import get_logger

T = TypeVar("T", int, float)

logger = get_logger(__name__)


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        logger.debug("%s is unset; using %r.", key, default)
        return default
    return value


def _env_number(key: str, default: T, parse: Callable[[str], T], minimum: Optional[T]) -> T:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("%s=%r is not a number; using %s.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%s is below %s; using %s.", key, value, minimum, default)
        return default
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    return _env_number(key, default, int, minimum)


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    return _env_number(key, default, float, minimum)


def env_csv(key: str) -> List[str]:
    """Split a comma separated variable, dropping blanks and duplicates."""
    raw = os.getenv(key) or ""
    items: List[str] = []
    for part in raw.split(","):
        item = part.strip()
        if item and item not in items:
            items.append(item)
    return items


def env_pairs(key: str) -> Dict[str, str]:
    """Parse ``a=1,b=2`` style variables. Malformed pairs are skipped."""
    pairs: Dict[str, str] = {}
    for item in env_csv(key):
        name, sep, value = item.partition("=")
        if not sep or not name.strip() or not value.strip():
            logger.warning("Ignoring malformed %s entry '%s'.", key, item)
            continue
        pairs[name.strip()] = value.strip()
    return pairs
