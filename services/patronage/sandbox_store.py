"""In-process sandbox Store for local runs and tests."""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Set

from services.patronage.capabilities import TransactionObserver
from services.patronage.durations import parse_duration_months
from services.patronage.models import Payment, Product, Transaction, TransactionState
from services.patronage.settings import PatronageSettings

logger = logging.getLogger(__name__)


def _sandbox_title(identifier: str, overrides: Optional[Mapping[str, int]] = None) -> str:
    months = parse_duration_months(identifier, overrides)
    if months is None:
        return identifier
    return f"{months} Month Patronage" if months == 1 else f"{months} Months Patronage"


class SandboxStore:
    """Store that settles payments in-process.

    With ``auto_complete`` every submitted payment is reported as purchased on
    the next event loop iteration. Without it, callers drive transactions with
    ``settle()`` and ``finish_restore()``.
    """

    def __init__(
        self,
        products: Iterable[Product] = (),
        *,
        payments_enabled: bool = True,
        auto_complete: bool = True,
        list_error: Optional[BaseException] = None,
    ) -> None:
        self._catalog: Dict[str, Product] = {product.identifier: product for product in products}
        self.payments_enabled = payments_enabled
        self.auto_complete = auto_complete
        self.list_error = list_error
        self.submitted: List[Payment] = []
        self.finished: List[str] = []
        self.list_requests = 0
        self.restore_requests = 0
        self._observers: List[TransactionObserver] = []
        self._purchased: List[Transaction] = []
        self._unfinished: Dict[str, Transaction] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: PatronageSettings) -> "SandboxStore":
        products = [
            Product(
                identifier=identifier,
                title=_sandbox_title(identifier, settings.product_durations),
                price=price,
            )
            for identifier, price in settings.sandbox_products.items()
        ]
        return cls(products)

    # Store protocol -----------------------------------------------------

    def can_make_payments(self) -> bool:
        return self.payments_enabled

    async def list_products(self, identifiers: Iterable[str]) -> List[Product]:
        self.list_requests += 1
        if self.list_error is not None:
            raise self.list_error
        wanted = set(identifiers)
        return [product for identifier, product in self._catalog.items() if identifier in wanted]

    def submit_payment(self, product: Product) -> Payment:
        payment = Payment(payment_id=f"sandbox-payment-{next(self._ids)}", product_identifier=product.identifier)
        self.submitted.append(payment)
        logger.debug("Sandbox accepted payment %s for %s", payment.payment_id, product.identifier)
        if self.auto_complete:
            self._schedule(self.settle(payment, TransactionState.PURCHASED))
        return payment

    def finish_transaction(self, transaction: Transaction) -> None:
        self.finished.append(transaction.transaction_id)
        self._unfinished.pop(transaction.transaction_id, None)

    def restore_completed_transactions(self) -> None:
        self.restore_requests += 1
        if self.auto_complete:
            self._schedule(self.replay_purchases())

    def add_observer(self, observer: TransactionObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: TransactionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # Sandbox controls ---------------------------------------------------

    def set_price(self, identifier: str, price: Decimal) -> None:
        product = self._catalog[identifier]
        self._catalog[identifier] = Product(
            identifier=product.identifier,
            title=product.title,
            price=price,
            price_locale=product.price_locale,
            description=product.description,
        )

    def unfinished_transactions(self) -> List[Transaction]:
        return list(self._unfinished.values())

    async def settle(
        self,
        payment: Payment,
        state: TransactionState,
        *,
        error: Optional[BaseException] = None,
    ) -> Transaction:
        """Report a new state for ``payment`` to every observer."""
        transaction = Transaction(
            transaction_id=f"sandbox-transaction-{next(self._ids)}",
            payment=payment,
            state=state,
            error=error,
            transaction_date=datetime.now(timezone.utc),
        )
        if state is TransactionState.PURCHASED:
            self._purchased.append(transaction)
        if state in (TransactionState.PURCHASED, TransactionState.FAILED, TransactionState.RESTORED):
            self._unfinished[transaction.transaction_id] = transaction
        await self.deliver([transaction])
        return transaction

    async def deliver(self, transactions: List[Transaction]) -> None:
        for observer in list(self._observers):
            await observer.transactions_updated(transactions)

    async def replay_unfinished(self) -> None:
        """Redeliver transactions nobody finished, as a Store does for a new observer."""
        pending = self.unfinished_transactions()
        if pending:
            await self.deliver(pending)

    async def replay_purchases(self) -> None:
        """Replay every purchase as restored, then signal the end of the restore."""
        for original in list(self._purchased):
            transaction = Transaction(
                transaction_id=f"sandbox-transaction-{next(self._ids)}",
                payment=original.payment,
                state=TransactionState.RESTORED,
                transaction_date=datetime.now(timezone.utc),
                original_transaction_id=original.transaction_id,
            )
            self._unfinished[transaction.transaction_id] = transaction
            await self.deliver([transaction])
        await self.finish_restore()

    async def finish_restore(self, error: Optional[BaseException] = None) -> None:
        for observer in list(self._observers):
            await observer.restore_finished(error)

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = ["SandboxStore"]
