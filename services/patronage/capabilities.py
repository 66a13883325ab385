"""Protocols for the collaborators the coordinator depends on."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

from services.patronage.models import LedgerPredicate, LedgerRecord, Payment, Product, Transaction

Clock = Callable[[], datetime]


class TransactionObserver(Protocol):
    """Receives transaction updates pushed by the Store."""

    async def transactions_updated(self, transactions: Sequence[Transaction]) -> None:
        ...

    async def restore_finished(self, error: Optional[BaseException] = None) -> None:
        ...


class Store(Protocol):
    """In-app purchase processor."""

    def can_make_payments(self) -> bool:
        ...

    async def list_products(self, identifiers: Iterable[str]) -> List[Product]:
        ...

    def submit_payment(self, product: Product) -> Payment:
        """Queue a payment; its progress is reported to the observers."""
        ...

    def finish_transaction(self, transaction: Transaction) -> None:
        """Acknowledge a transaction so the Store stops redelivering it."""
        ...

    def restore_completed_transactions(self) -> None:
        ...

    def add_observer(self, observer: TransactionObserver) -> None:
        ...

    def remove_observer(self, observer: TransactionObserver) -> None:
        ...


class Ledger(Protocol):
    """Durable record store holding ``User`` and ``Purchase`` records."""

    async def current_user_id(self) -> Optional[str]:
        ...

    async def fetch_record(self, record_id: str) -> Optional[LedgerRecord]:
        ...

    async def query(self, record_type: str, predicate: LedgerPredicate) -> List[LedgerRecord]:
        ...

    async def insert(self, record: LedgerRecord) -> LedgerRecord:
        """Persist ``record`` and return it with its assigned ``record_id``."""
        ...


__all__ = ["Clock", "Ledger", "Store", "TransactionObserver"]
