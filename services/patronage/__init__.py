"""Patronage purchase coordination (Store purchases recorded in a Ledger)."""

from .coordinator import PurchaseCoordinator
from .errors import (
    IdentityUnavailableError,
    LedgerQueryError,
    LedgerWriteError,
    MissingAppIDError,
    PatronageError,
    PaymentsDisabledError,
    ProductsNotConfiguredError,
    ResponseParseError,
    ReviewLookupError,
    StoreUnavailableError,
    UnknownProductError,
)
from .models import (
    CatalogResult,
    ExpirationResult,
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
from .settings import PatronageSettings, clear_patronage_settings_cache, load_patronage_settings
from .state import PatronageSnapshot, PatronageState

__all__ = [
    "CatalogResult",
    "ExpirationResult",
    "IdentityUnavailableError",
    "LedgerQueryError",
    "LedgerWriteError",
    "MissingAppIDError",
    "PatronCountResult",
    "PatronageError",
    "PatronageSettings",
    "PatronageSnapshot",
    "PatronageState",
    "Payment",
    "PaymentsDisabledError",
    "Product",
    "ProductsNotConfiguredError",
    "PurchaseCoordinator",
    "PurchaseOutcome",
    "PurchaseRecord",
    "PurchaseState",
    "RecordResult",
    "ResponseParseError",
    "RestoreOutcome",
    "ReviewCountResult",
    "ReviewLookupError",
    "StoreUnavailableError",
    "Transaction",
    "TransactionState",
    "UnknownProductError",
    "clear_patronage_settings_cache",
    "load_patronage_settings",
]
