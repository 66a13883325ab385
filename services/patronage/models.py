"""Typed values exchanged between the coordinator, the Store and the Ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)

RECORD_TYPE_USER = "User"
RECORD_TYPE_PURCHASE = "Purchase"
DEFAULT_ZONE = "_defaultZone"

# Ledger field names.
FIELD_PURCHASES = "purchases"
FIELD_USER_RECORD_ID = "userRecordID"
FIELD_PRODUCT_IDENTIFIER = "productIdentifier"
FIELD_PURCHASE_DATE = "purchaseDate"
FIELD_EXPIRATION_DATE = "expirationDate"


class TransactionState(str, Enum):
    PURCHASING = "purchasing"
    PURCHASED = "purchased"
    FAILED = "failed"
    RESTORED = "restored"
    DEFERRED = "deferred"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class PurchaseState(str, Enum):
    """Lifecycle of a single payment as seen by the coordinator."""

    IDLE = "idle"
    PURCHASING = "purchasing"
    PURCHASED = "purchased"
    RECORDING = "recording"
    RECORDED = "recorded"
    FAILED = "failed"
    FAILED_TO_RECORD = "failed_to_record"
    DEFERRED = "deferred"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PURCHASE_STATES

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


_TERMINAL_PURCHASE_STATES = frozenset(
    {PurchaseState.RECORDED, PurchaseState.FAILED, PurchaseState.FAILED_TO_RECORD}
)


@dataclass(frozen=True, slots=True)
class Product:
    """A purchasable patronage tier as reported by the Store."""

    identifier: str
    title: str
    price: Decimal
    price_locale: str = "en_US"
    description: str = ""


@dataclass(frozen=True, slots=True)
class Payment:
    payment_id: str
    product_identifier: str
    quantity: int = 1


@dataclass(slots=True)
class Transaction:
    """A Store transaction update delivered to the observer."""

    transaction_id: str
    payment: Payment
    state: TransactionState
    error: Optional[BaseException] = None
    transaction_date: Optional[datetime] = None
    original_transaction_id: Optional[str] = None


@dataclass(slots=True)
class LedgerRecord:
    """Schema-level record as stored by the Ledger."""

    record_type: str
    fields: Dict[str, Any] = field(default_factory=dict)
    record_id: Optional[str] = None
    zone: str = DEFAULT_ZONE


@dataclass(frozen=True, slots=True)
class MatchAll:
    """Predicate selecting every record of a type."""

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class FieldEquals:
    field_name: str
    value: Any

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return fields.get(self.field_name) == self.value


@dataclass(frozen=True, slots=True)
class FieldAfter:
    """Predicate selecting records whose date field is strictly after ``value``."""

    field_name: str
    value: datetime

    def matches(self, fields: Mapping[str, Any]) -> bool:
        candidate = coerce_datetime(fields.get(self.field_name))
        return candidate is not None and candidate > self.value


LedgerPredicate = Union[MatchAll, FieldEquals, FieldAfter]


def coerce_datetime(value: object) -> Optional[datetime]:
    """Return an aware UTC datetime for ledger values, or None when unreadable."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class PurchaseRecord:
    """A completed purchase, one per finished Store transaction."""

    user_record_id: str
    product_identifier: str
    purchase_date: datetime
    expiration_date: Optional[datetime]
    record_id: Optional[str] = None

    def to_ledger_record(self) -> LedgerRecord:
        fields: Dict[str, Any] = {
            FIELD_USER_RECORD_ID: self.user_record_id,
            FIELD_PRODUCT_IDENTIFIER: self.product_identifier,
            FIELD_PURCHASE_DATE: self.purchase_date,
        }
        if self.expiration_date is not None:
            fields[FIELD_EXPIRATION_DATE] = self.expiration_date
        return LedgerRecord(record_type=RECORD_TYPE_PURCHASE, fields=fields, record_id=self.record_id)

    @classmethod
    def from_ledger_record(cls, record: LedgerRecord) -> Optional["PurchaseRecord"]:
        """Hydrate a ledger record; returns None when identity or purchase date is missing."""
        fields = record.fields
        user_record_id = str(fields.get(FIELD_USER_RECORD_ID) or "").strip()
        purchase_date = coerce_datetime(fields.get(FIELD_PURCHASE_DATE))
        if not user_record_id or purchase_date is None:
            logger.debug("Skipping malformed purchase record %s.", record.record_id)
            return None
        return cls(
            user_record_id=user_record_id,
            product_identifier=str(fields.get(FIELD_PRODUCT_IDENTIFIER) or ""),
            purchase_date=purchase_date,
            expiration_date=coerce_datetime(fields.get(FIELD_EXPIRATION_DATE)),
            record_id=record.record_id,
        )


@dataclass(slots=True)
class CatalogResult:
    products: List[Product] = field(default_factory=list)
    error: Optional[BaseException] = None


@dataclass(slots=True)
class RecordResult:
    recorded: bool
    record: Optional[PurchaseRecord] = None
    error: Optional[BaseException] = None


@dataclass(slots=True)
class PurchaseOutcome:
    """Final answer for one ``purchase()`` call.

    ``success`` reflects the Store's verdict. A purchase the Store accepted but
    the Ledger failed to record has ``success=True`` and
    ``state=FAILED_TO_RECORD`` with the recording error attached.
    """

    success: bool
    state: PurchaseState
    payment: Optional[Payment] = None
    record: Optional[PurchaseRecord] = None
    error: Optional[BaseException] = None

    @property
    def recorded(self) -> bool:
        return self.state is PurchaseState.RECORDED


@dataclass(slots=True)
class RestoreOutcome:
    success: bool
    restored: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None


@dataclass(slots=True)
class ExpirationResult:
    expiration_date: Optional[datetime] = None
    error: Optional[BaseException] = None


@dataclass(slots=True)
class PatronCountResult:
    count: int = 0
    error: Optional[BaseException] = None


@dataclass(slots=True)
class ReviewCountResult:
    count: int = 0
    error: Optional[BaseException] = None


__all__ = [
    "CatalogResult",
    "DEFAULT_ZONE",
    "ExpirationResult",
    "FIELD_EXPIRATION_DATE",
    "FIELD_PRODUCT_IDENTIFIER",
    "FIELD_PURCHASES",
    "FIELD_PURCHASE_DATE",
    "FIELD_USER_RECORD_ID",
    "FieldAfter",
    "FieldEquals",
    "LedgerPredicate",
    "LedgerRecord",
    "MatchAll",
    "PatronCountResult",
    "Payment",
    "Product",
    "PurchaseOutcome",
    "PurchaseRecord",
    "PurchaseState",
    "RECORD_TYPE_PURCHASE",
    "RECORD_TYPE_USER",
    "RecordResult",
    "RestoreOutcome",
    "ReviewCountResult",
    "Transaction",
    "TransactionState",
    "coerce_datetime",
]
