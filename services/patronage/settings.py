"""Environment-driven configuration for the patronage coordinator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from core.env import env_csv, env_float, env_int, env_pairs, env_str
from services.patronage.durations import parse_duration_months

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_URL = "https://itunes.apple.com/lookup"
DEFAULT_DATABASE_URL = "sqlite:///patronage.db"


@dataclass(slots=True)
class PatronageSettings:
    product_identifiers: Tuple[str, ...] = ()
    product_durations: Dict[str, int] = field(default_factory=dict)
    app_id: Optional[str] = None
    lookup_url: str = DEFAULT_LOOKUP_URL
    lookup_timeout: float = 10.0
    recent_window_months: int = 1
    purchase_wait_seconds: float = 30.0
    user_id: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    sandbox_products: Dict[str, Decimal] = field(default_factory=dict)

    def duration_for(self, product_identifier: str) -> Optional[int]:
        return parse_duration_months(product_identifier, self.product_durations)

    def unresolved_products(self) -> List[str]:
        """Configured identifiers that map to no patronage duration."""
        return [identifier for identifier in self.product_identifiers if self.duration_for(identifier) is None]


def _parse_durations(raw: Dict[str, str]) -> Dict[str, int]:
    durations: Dict[str, int] = {}
    for identifier, value in raw.items():
        try:
            months = int(value)
        except ValueError:
            logger.warning("Ignoring non-numeric duration for %s: %s", identifier, value)
            continue
        if months <= 0:
            logger.warning("Ignoring non-positive duration for %s: %s", identifier, value)
            continue
        durations[identifier] = months
    return durations


def _parse_prices(raw: Dict[str, str]) -> Dict[str, Decimal]:
    prices: Dict[str, Decimal] = {}
    for identifier, value in raw.items():
        try:
            prices[identifier] = Decimal(value)
        except InvalidOperation:
            logger.warning("Ignoring invalid sandbox price for %s: %s", identifier, value)
    return prices


@lru_cache(maxsize=1)
def load_patronage_settings() -> PatronageSettings:
    """Read patronage settings from the environment (cached)."""
    sandbox_products = _parse_prices(env_pairs("PATRONAGE_SANDBOX_PRODUCTS"))
    product_identifiers = env_csv("PATRONAGE_PRODUCT_IDS") or list(sandbox_products)
    settings = PatronageSettings(
        product_identifiers=tuple(product_identifiers),
        product_durations=_parse_durations(env_pairs("PATRONAGE_PRODUCT_DURATIONS")),
        app_id=(env_str("PATRONAGE_APP_ID") or "").strip() or None,
        lookup_url=env_str("PATRONAGE_LOOKUP_URL", DEFAULT_LOOKUP_URL) or DEFAULT_LOOKUP_URL,
        lookup_timeout=env_float("PATRONAGE_LOOKUP_TIMEOUT", 10.0, minimum=0.1),
        recent_window_months=env_int("PATRONAGE_RECENT_WINDOW_MONTHS", 1, minimum=1),
        purchase_wait_seconds=env_float("PATRONAGE_PURCHASE_WAIT_SECONDS", 30.0, minimum=0.0),
        user_id=(env_str("PATRONAGE_USER_ID") or "").strip() or None,
        database_url=env_str("PATRONAGE_DATABASE_URL", DEFAULT_DATABASE_URL) or DEFAULT_DATABASE_URL,
        sandbox_products=sandbox_products,
    )
    for identifier in settings.unresolved_products():
        logger.warning("Product %s has no patronage duration; purchases will record no expiration.", identifier)
    return settings


def clear_patronage_settings_cache() -> None:
    load_patronage_settings.cache_clear()


__all__ = ["PatronageSettings", "clear_patronage_settings_cache", "load_patronage_settings"]
