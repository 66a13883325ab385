"""In-memory patronage facts derived from the Store, the Ledger and the review lookup."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from services.patronage.models import Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PatronageSnapshot:
    products: Tuple[Product, ...] = ()
    expiration_date: Optional[datetime] = None
    patron_count: int = 0
    review_count: int = 0

    def is_active(self, now: datetime) -> bool:
        return self.expiration_date is not None and self.expiration_date > now


Listener = Callable[[str, PatronageSnapshot], None]


@dataclass
class PatronageState:
    """Cached facts with one writer per field.

    Each field holds the result of the last successful fetch of its kind. Failed
    fetches never call the update methods, so readers keep seeing the previous
    value.
    """

    _products: Tuple[Product, ...] = ()
    _expiration_date: Optional[datetime] = None
    _patron_count: int = 0
    _review_count: int = 0
    _listeners: List[Listener] = field(default_factory=list)

    @property
    def products(self) -> Tuple[Product, ...]:
        return self._products

    @property
    def expiration_date(self) -> Optional[datetime]:
        return self._expiration_date

    @property
    def patron_count(self) -> int:
        return self._patron_count

    @property
    def review_count(self) -> int:
        return self._review_count

    def snapshot(self) -> PatronageSnapshot:
        return PatronageSnapshot(
            products=self._products,
            expiration_date=self._expiration_date,
            patron_count=self._patron_count,
            review_count=self._review_count,
        )

    def find_product(self, identifier: str) -> Optional[Product]:
        for product in self._products:
            if product.identifier == identifier:
                return product
        return None

    def update_products(self, products: Sequence[Product]) -> None:
        self._products = tuple(products)
        self._notify("products")

    def update_expiration(self, expiration_date: Optional[datetime]) -> None:
        self._expiration_date = expiration_date
        self._notify("expiration_date")

    def update_patron_count(self, count: int) -> None:
        self._patron_count = count
        self._notify("patron_count")

    def update_review_count(self, count: int) -> None:
        self._review_count = count
        self._notify("review_count")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for field changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, field_name: str) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(field_name, snapshot)
            except Exception:  # pragma: no cover
                logger.exception("Patronage state listener failed for %s.", field_name)


__all__ = ["Listener", "PatronageSnapshot", "PatronageState"]
