"""Purchase-and-record coordinator for patronage subscriptions.

The coordinator drives the Store purchase lifecycle, writes one ``Purchase``
record to the Ledger per completed transaction, and derives the cached
patronage facts (catalog, expiration date, recent patron count, review count).
Every public operation returns its own result value; collaborator failures are
logged and carried in the result instead of being raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from services.patronage.capabilities import Clock, Ledger, Store
from services.patronage.durations import add_months, compute_expiration, resolve_purchase_date
from services.patronage.errors import (
    IdentityUnavailableError,
    LedgerQueryError,
    LedgerWriteError,
    MissingAppIDError,
    PatronageError,
    PaymentsDisabledError,
    ProductsNotConfiguredError,
    ReviewLookupError,
    StoreUnavailableError,
    UnknownProductError,
)
from services.patronage.models import (
    FIELD_PURCHASES,
    FIELD_PURCHASE_DATE,
    FIELD_USER_RECORD_ID,
    RECORD_TYPE_PURCHASE,
    RECORD_TYPE_USER,
    CatalogResult,
    ExpirationResult,
    FieldAfter,
    FieldEquals,
    MatchAll,
    PatronCountResult,
    Payment,
    Product,
    PurchaseOutcome,
    PurchaseRecord,
    PurchaseState,
    RecordResult,
    RestoreOutcome,
    ReviewCountResult,
    Transaction,
    TransactionState,
)
from services.patronage.review_lookup import ReviewLookupClient
from services.patronage.settings import PatronageSettings, load_patronage_settings
from services.patronage.state import PatronageSnapshot, PatronageState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _PendingPurchase:
    payment: Payment
    future: "asyncio.Future[PurchaseOutcome]"
    state: PurchaseState = PurchaseState.PURCHASING

    def resolve(self, outcome: PurchaseOutcome) -> None:
        self.state = outcome.state
        if not self.future.done():
            self.future.set_result(outcome)


class PurchaseCoordinator:
    """Explicitly constructed service owning the patronage purchase flow."""

    def __init__(
        self,
        *,
        store: Store,
        ledger: Ledger,
        settings: Optional[PatronageSettings] = None,
        clock: Optional[Clock] = None,
        review_client: Optional[ReviewLookupClient] = None,
        state: Optional[PatronageState] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._settings = settings or load_patronage_settings()
        self._clock = clock or _utcnow
        self._review_client = review_client or ReviewLookupClient(
            base_url=self._settings.lookup_url,
            timeout=self._settings.lookup_timeout,
        )
        self.state = state or PatronageState()
        self._pending: Dict[str, _PendingPurchase] = {}
        self._restore_waiters: List["asyncio.Future[RestoreOutcome]"] = []
        self._restored: List[str] = []
        # Registered for the coordinator's lifetime; the Store may replay
        # unfinished transactions from a previous run at any time.
        self._store.add_observer(self)

    def close(self) -> None:
        self._store.remove_observer(self)

    @property
    def settings(self) -> PatronageSettings:
        return self._settings

    @property
    def products(self) -> Tuple[Product, ...]:
        return self.state.products

    @property
    def expiration_date(self) -> Optional[datetime]:
        return self.state.expiration_date

    @property
    def patron_count(self) -> int:
        return self.state.patron_count

    @property
    def review_count(self) -> int:
        return self.state.review_count

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def fetch_catalog(self) -> CatalogResult:
        """Fetch configured products, cache them sorted by ascending price."""
        identifiers = list(self._settings.product_identifiers)
        if not identifiers:
            error = ProductsNotConfiguredError("No patronage product identifiers are configured.")
            logger.warning(error.message)
            return CatalogResult(error=error)
        if not self._store.can_make_payments():
            error = StoreUnavailableError("The Store reports that payments are disabled.")
            logger.warning(error.message)
            return CatalogResult(error=error)

        try:
            products = await self._store.list_products(identifiers)
        except PatronageError as exc:
            logger.warning("Product request failed: %s", exc)
            return CatalogResult(error=exc)
        except Exception as exc:
            logger.warning("Product request failed: %s", exc)
            return CatalogResult(error=StoreUnavailableError("The Store could not list products.", cause=exc))

        # sorted() is stable, so equal prices keep the Store's order.
        ordered = sorted(products, key=lambda product: product.price)
        missing = set(identifiers) - {product.identifier for product in ordered}
        if missing:
            logger.info("Store did not return products: %s", ", ".join(sorted(missing)))
        self.state.update_products(ordered)
        return CatalogResult(products=list(ordered))

    # ------------------------------------------------------------------
    # Purchasing
    # ------------------------------------------------------------------

    async def purchase(self, product: Product) -> PurchaseOutcome:
        """Submit a payment and wait for the Store to settle it.

        Deferred transactions keep the call pending until the Store reports a
        later state; there is no timeout.
        """
        if not self._store.can_make_payments():
            error = PaymentsDisabledError("The payment queue reported that it cannot make payments.")
            logger.warning(error.message)
            return PurchaseOutcome(success=False, state=PurchaseState.FAILED, error=error)

        loop = asyncio.get_running_loop()
        try:
            payment = self._store.submit_payment(product)
        except Exception as exc:
            logger.warning("Submitting payment for %s failed: %s", product.identifier, exc)
            error = StoreUnavailableError("The Store rejected the payment.", cause=exc)
            return PurchaseOutcome(success=False, state=PurchaseState.FAILED, error=error)

        pending = _PendingPurchase(payment=payment, future=loop.create_future())
        self._pending[payment.payment_id] = pending
        logger.info("Submitted payment %s for %s", payment.payment_id, product.identifier)
        return await pending.future

    async def purchase_by_identifier(self, product_identifier: str) -> PurchaseOutcome:
        """Purchase a catalog product by identifier, fetching the catalog when needed."""
        product = self.state.find_product(product_identifier)
        if product is None:
            result = await self.fetch_catalog()
            if result.error is not None and not self.state.products:
                return PurchaseOutcome(success=False, state=PurchaseState.FAILED, error=result.error)
            product = self.state.find_product(product_identifier)
        if product is None:
            error = UnknownProductError(f"Product {product_identifier} is not in the patronage catalog.")
            return PurchaseOutcome(success=False, state=PurchaseState.FAILED, error=error)
        return await self.purchase(product)

    def pending_purchases(self) -> List[Tuple[Payment, PurchaseState]]:
        return [(pending.payment, pending.state) for pending in self._pending.values()]

    # ------------------------------------------------------------------
    # Restoring
    # ------------------------------------------------------------------

    async def restore_purchases(self) -> RestoreOutcome:
        """Replay completed transactions. Restored transactions are not written to the Ledger."""
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[RestoreOutcome]" = loop.create_future()
        start_replay = not self._restore_waiters
        self._restore_waiters.append(future)
        if start_replay:
            self._restored = []
            try:
                self._store.restore_completed_transactions()
            except Exception as exc:
                logger.warning("Restoring completed transactions failed: %s", exc)
                await self.restore_finished(StoreUnavailableError("The Store could not restore purchases.", cause=exc))
        return await future

    # ------------------------------------------------------------------
    # TransactionObserver
    # ------------------------------------------------------------------

    async def transactions_updated(self, transactions: Sequence[Transaction]) -> None:
        """Handle Store updates in delivery order."""
        for transaction in transactions:
            payment = transaction.payment
            pending = self._pending.get(payment.payment_id)
            state = transaction.state

            if state is TransactionState.PURCHASING:
                if pending is not None:
                    pending.state = PurchaseState.PURCHASING
                logger.debug("Payment %s is purchasing.", payment.payment_id)

            elif state is TransactionState.DEFERRED:
                if pending is not None:
                    pending.state = PurchaseState.DEFERRED
                logger.info("Payment %s was deferred; waiting for the Store.", payment.payment_id)

            elif state is TransactionState.FAILED:
                self._store.finish_transaction(transaction)
                logger.warning("Payment %s failed: %s", payment.payment_id, transaction.error)
                self._pending.pop(payment.payment_id, None)
                if pending is not None:
                    pending.resolve(
                        PurchaseOutcome(
                            success=False,
                            state=PurchaseState.FAILED,
                            payment=payment,
                            error=transaction.error,
                        )
                    )

            elif state is TransactionState.PURCHASED:
                self._store.finish_transaction(transaction)
                if pending is not None:
                    pending.state = PurchaseState.RECORDING
                else:
                    logger.info("Recording payment %s with no waiting caller.", payment.payment_id)
                try:
                    result = await self.record_purchase(payment)
                except Exception as exc:
                    logger.exception("Recording payment %s failed unexpectedly.", payment.payment_id)
                    result = RecordResult(
                        recorded=False,
                        error=LedgerWriteError("Recording the purchase failed unexpectedly.", cause=exc),
                    )
                self._pending.pop(payment.payment_id, None)
                if pending is not None:
                    pending.resolve(
                        PurchaseOutcome(
                            success=True,
                            state=PurchaseState.RECORDED if result.recorded else PurchaseState.FAILED_TO_RECORD,
                            payment=payment,
                            record=result.record,
                            error=result.error,
                        )
                    )

            elif state is TransactionState.RESTORED:
                self._store.finish_transaction(transaction)
                logger.info("Restored purchase of %s.", payment.product_identifier)
                if self._restore_waiters:
                    self._restored.append(payment.product_identifier)

    async def restore_finished(self, error: Optional[BaseException] = None) -> None:
        waiters, self._restore_waiters = self._restore_waiters, []
        restored, self._restored = list(self._restored), []
        if error is not None:
            logger.warning("Restore finished with error: %s", error)
        else:
            logger.info("Restore finished with %d transaction(s).", len(restored))
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(RestoreOutcome(success=error is None, restored=list(restored), error=error))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def _resolve_user_id(self) -> str:
        try:
            user_id = await self._ledger.current_user_id()
        except PatronageError:
            raise
        except Exception as exc:
            raise IdentityUnavailableError("Could not resolve the current user.", cause=exc) from exc
        if not user_id:
            raise IdentityUnavailableError("No user is signed in to the ledger.")
        return user_id

    async def record_purchase(self, payment: Payment) -> RecordResult:
        """Write a ``Purchase`` record for a Store-confirmed payment. Never retries."""
        try:
            user_id = await self._resolve_user_id()
        except PatronageError as exc:
            logger.warning("Couldn't get a signed in user while recording %s: %s", payment.payment_id, exc)
            return RecordResult(recorded=False, error=exc)

        try:
            user_record = await self._ledger.fetch_record(user_id)
        except Exception as exc:
            logger.warning("Fetching user record %s failed: %s", user_id, exc)
            return RecordResult(recorded=False, error=LedgerQueryError("Could not fetch the user record.", cause=exc))
        if user_record is None:
            logger.warning("Got user id %s but no user record.", user_id)
            return RecordResult(recorded=False, error=LedgerQueryError(f"User record {user_id} does not exist."))

        current = await self.fetch_patronage_expiration()
        if current.error is not None:
            logger.warning("Recording %s without the previous expiration: %s", payment.payment_id, current.error)

        now = self._clock()
        purchase_date = resolve_purchase_date(current.expiration_date, now)
        if purchase_date != now:
            logger.info("Extending patronage from the current expiration %s.", purchase_date.isoformat())
        record = PurchaseRecord(
            user_record_id=user_record.record_id or user_id,
            product_identifier=payment.product_identifier,
            purchase_date=purchase_date,
            expiration_date=compute_expiration(
                payment.product_identifier,
                purchase_date,
                self._settings.product_durations,
            ),
        )

        try:
            saved = await self._ledger.insert(record.to_ledger_record())
        except Exception as exc:
            logger.warning("Saving purchase of %s failed: %s", payment.product_identifier, exc)
            return RecordResult(recorded=False, record=record, error=LedgerWriteError("Could not save the purchase.", cause=exc))

        stored = PurchaseRecord(
            user_record_id=record.user_record_id,
            product_identifier=record.product_identifier,
            purchase_date=record.purchase_date,
            expiration_date=record.expiration_date,
            record_id=saved.record_id,
        )
        logger.info("Recorded purchase %s for user %s.", stored.record_id, stored.user_record_id)
        return RecordResult(recorded=True, record=stored)

    # ------------------------------------------------------------------
    # Derived facts
    # ------------------------------------------------------------------

    async def fetch_patronage_expiration(self) -> ExpirationResult:
        """Latest expiration among the current user's purchases, or None without purchases."""
        try:
            user_id = await self._resolve_user_id()
        except PatronageError as exc:
            logger.warning("Couldn't resolve the user for expiration lookup: %s", exc)
            return ExpirationResult(error=exc)

        try:
            records = await self._ledger.query(RECORD_TYPE_PURCHASE, FieldEquals(FIELD_USER_RECORD_ID, user_id))
        except Exception as exc:
            logger.warning("Purchase query for user %s failed: %s", user_id, exc)
            return ExpirationResult(error=LedgerQueryError("Could not query purchases.", cause=exc))

        latest: Optional[datetime] = None
        for raw in records:
            record = PurchaseRecord.from_ledger_record(raw)
            if record is None or record.expiration_date is None:
                logger.warning("Couldn't find an expiration date for purchase %s.", raw.record_id)
                continue
            if latest is None or record.expiration_date > latest:
                latest = record.expiration_date

        if not records:
            logger.info("Found no prior purchases for user %s.", user_id)
        elif latest is not None:
            logger.debug("Latest expiration date for %s is %s.", user_id, latest.isoformat())
        self.state.update_expiration(latest)
        return ExpirationResult(expiration_date=latest)

    async def fetch_patron_count(self, since: Optional[datetime] = None) -> PatronCountResult:
        """Count distinct users with a purchase dated after ``since``."""
        if since is None:
            since = add_months(self._clock(), -self._settings.recent_window_months)
        try:
            records = await self._ledger.query(RECORD_TYPE_PURCHASE, FieldAfter(FIELD_PURCHASE_DATE, since))
        except Exception as exc:
            logger.warning("Could not retrieve purchases since %s: %s", since.isoformat(), exc)
            return PatronCountResult(error=LedgerQueryError("Could not query recent purchases.", cause=exc))

        user_ids = set()
        for raw in records:
            record = PurchaseRecord.from_ledger_record(raw)
            if record is None:
                logger.warning("Purchase %s is missing a user record id.", raw.record_id)
                continue
            user_ids.add(record.user_record_id)

        count = len(user_ids)
        self.state.update_patron_count(count)
        return PatronCountResult(count=count)

    async def fetch_lifetime_patron_count(self) -> PatronCountResult:
        """Count ``User`` records that hold at least one purchase reference."""
        try:
            records = await self._ledger.query(RECORD_TYPE_USER, MatchAll())
        except Exception as exc:
            logger.warning("Could not retrieve user records: %s", exc)
            return PatronCountResult(error=LedgerQueryError("Could not query users.", cause=exc))

        count = 0
        for record in records:
            purchases = record.fields.get(FIELD_PURCHASES)
            if not isinstance(purchases, list):
                logger.debug("Could not read purchase references from user %s.", record.record_id)
                continue
            if purchases:
                count += 1
        return PatronCountResult(count=count)

    async def fetch_review_count(self) -> ReviewCountResult:
        app_id = self._settings.app_id
        if not app_id:
            error = MissingAppIDError("The app ID was not configured before fetching reviews.")
            logger.warning(error.message)
            return ReviewCountResult(error=error)

        try:
            count = await self._review_client.fetch_rating_count(app_id)
        except PatronageError as exc:
            logger.warning("Review count lookup failed: %s", exc)
            return ReviewCountResult(error=exc)
        except Exception as exc:
            logger.warning("Review count lookup failed: %s", exc)
            return ReviewCountResult(error=ReviewLookupError("Review lookup failed.", cause=exc))

        self.state.update_review_count(count)
        return ReviewCountResult(count=count)

    async def refresh(self) -> PatronageSnapshot:
        """Refresh every cached fact concurrently and return the resulting snapshot."""
        await asyncio.gather(
            self.fetch_catalog(),
            self.fetch_patronage_expiration(),
            self.fetch_patron_count(),
            self.fetch_review_count(),
        )
        return self.state.snapshot()


__all__ = ["PurchaseCoordinator"]
