"""Error taxonomy for the patronage purchase coordinator."""

from __future__ import annotations

from typing import Dict, Optional


class PatronageError(RuntimeError):
    """Base error carried in coordinator results and raised by capabilities."""

    code = "patronage.error"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_detail(self) -> Dict[str, str]:
        detail = {"code": self.code, "message": self.message}
        if self.cause is not None:
            detail["cause"] = str(self.cause)
        return detail


class PaymentsDisabledError(PatronageError):
    """Raised when the platform reports that payments cannot be made."""

    code = "patronage.payments_disabled"


class StoreUnavailableError(PatronageError):
    """Raised when the Store cannot list products."""

    code = "patronage.store_unavailable"


class ProductsNotConfiguredError(PatronageError):
    code = "patronage.products_not_configured"


class UnknownProductError(PatronageError):
    code = "patronage.unknown_product"


class MissingAppIDError(PatronageError):
    """Raised when reviews are requested before an app identifier is configured."""

    code = "patronage.missing_app_id"


class IdentityUnavailableError(PatronageError):
    """Raised when the Ledger cannot resolve the current user."""

    code = "patronage.identity_unavailable"


class LedgerQueryError(PatronageError):
    code = "patronage.ledger_query_failed"


class LedgerWriteError(PatronageError):
    code = "patronage.ledger_write_failed"


class ReviewLookupError(PatronageError):
    """Raised when the review lookup endpoint cannot be reached."""

    code = "patronage.review_lookup_failed"


class ResponseParseError(PatronageError):
    """Raised when the review lookup body does not have the expected shape."""

    code = "patronage.response_parse_failed"


__all__ = [
    "IdentityUnavailableError",
    "LedgerQueryError",
    "LedgerWriteError",
    "MissingAppIDError",
    "PatronageError",
    "PaymentsDisabledError",
    "ProductsNotConfiguredError",
    "ResponseParseError",
    "ReviewLookupError",
    "StoreUnavailableError",
    "UnknownProductError",
]
