from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Generator, List, Optional

import pytest

from services.patronage import PatronageSettings, Product, PurchaseCoordinator, clear_patronage_settings_cache
from services.patronage.models import (
    FIELD_PURCHASES,
    FIELD_USER_RECORD_ID,
    RECORD_TYPE_USER,
    LedgerPredicate,
    LedgerRecord,
    PurchaseRecord,
)
from services.patronage.sandbox_store import SandboxStore

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

MONTHLY = Product(identifier="com.app.patronage.1", title="1 Month Patronage", price=Decimal("0.99"))
QUARTERLY = Product(identifier="com.app.patronage.3", title="3 Months Patronage", price=Decimal("2.99"))
YEARLY = Product(identifier="com.app.patronage.12", title="12 Months Patronage", price=Decimal("9.99"))


class FakeLedger:
    """In-memory ledger with switchable failures."""

    def __init__(self, user_id: Optional[str] = "user-a") -> None:
        self.user_id = user_id
        self.records: List[LedgerRecord] = []
        self.extra_users: List[LedgerRecord] = []
        self.identity_error: Optional[BaseException] = None
        self.fetch_error: Optional[BaseException] = None
        self.query_error: Optional[BaseException] = None
        self.insert_error: Optional[BaseException] = None
        self.missing_user_record = False
        self.inserted: List[LedgerRecord] = []

    def add_purchase(
        self,
        user_id: str,
        purchase_date: datetime,
        expiration_date: Optional[datetime] = None,
        product_identifier: str = "com.app.patronage.1",
    ) -> LedgerRecord:
        record = PurchaseRecord(
            user_record_id=user_id,
            product_identifier=product_identifier,
            purchase_date=purchase_date,
            expiration_date=expiration_date,
            record_id=f"seed-{len(self.records) + 1}",
        ).to_ledger_record()
        self.records.append(record)
        return record

    def _user_record(self, user_id: str) -> LedgerRecord:
        purchases = [
            record.record_id for record in self.records if record.fields.get(FIELD_USER_RECORD_ID) == user_id
        ]
        return LedgerRecord(record_type=RECORD_TYPE_USER, fields={FIELD_PURCHASES: purchases}, record_id=user_id)

    async def current_user_id(self) -> Optional[str]:
        if self.identity_error is not None:
            raise self.identity_error
        return self.user_id

    async def fetch_record(self, record_id: str) -> Optional[LedgerRecord]:
        if self.fetch_error is not None:
            raise self.fetch_error
        if self.missing_user_record:
            return None
        return self._user_record(record_id)

    async def query(self, record_type: str, predicate: LedgerPredicate) -> List[LedgerRecord]:
        if self.query_error is not None:
            raise self.query_error
        if record_type == RECORD_TYPE_USER:
            user_ids: Dict[str, None] = {}
            for record in self.records:
                user_ids[str(record.fields.get(FIELD_USER_RECORD_ID))] = None
            return [self._user_record(user_id) for user_id in user_ids] + list(self.extra_users)
        return [record for record in self.records if predicate.matches(record.fields)]

    async def insert(self, record: LedgerRecord) -> LedgerRecord:
        if self.insert_error is not None:
            raise self.insert_error
        saved = LedgerRecord(
            record_type=record.record_type,
            fields=dict(record.fields),
            record_id=f"purchase-{len(self.records) + 1}",
            zone=record.zone,
        )
        self.records.append(saved)
        self.inserted.append(saved)
        return saved


class FakeReviewClient:
    def __init__(self, count: int = 0, error: Optional[BaseException] = None) -> None:
        self.count = count
        self.error = error
        self.calls: List[str] = []

    async def fetch_rating_count(self, app_id: str) -> int:
        self.calls.append(app_id)
        if self.error is not None:
            raise self.error
        return self.count


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Generator[None, None, None]:
    clear_patronage_settings_cache()
    yield
    clear_patronage_settings_cache()


@pytest.fixture()
def settings() -> PatronageSettings:
    return PatronageSettings(
        product_identifiers=(YEARLY.identifier, MONTHLY.identifier, QUARTERLY.identifier),
        app_id="284882215",
    )


@pytest.fixture()
def store() -> SandboxStore:
    return SandboxStore([YEARLY, MONTHLY, QUARTERLY], auto_complete=False)


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def review_client() -> FakeReviewClient:
    return FakeReviewClient(count=42)


@pytest.fixture()
def make_coordinator(
    store: SandboxStore,
    ledger: FakeLedger,
    settings: PatronageSettings,
    review_client: FakeReviewClient,
) -> Callable[..., PurchaseCoordinator]:
    def _make(**overrides) -> PurchaseCoordinator:
        kwargs = {
            "store": store,
            "ledger": ledger,
            "settings": settings,
            "clock": lambda: NOW,
            "review_client": review_client,
        }
        kwargs.update(overrides)
        return PurchaseCoordinator(**kwargs)

    return _make


@pytest.fixture()
def coordinator(make_coordinator: Callable[..., PurchaseCoordinator]) -> PurchaseCoordinator:
    return make_coordinator()


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def products() -> Dict[str, Product]:
    return {"monthly": MONTHLY, "quarterly": QUARTERLY, "yearly": YEARLY}
