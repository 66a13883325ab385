"""SQLAlchemy-backed Ledger holding ``User`` and ``Purchase`` records."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.patronage import PatronPurchaseRow, PatronUserRow
from services.patronage.errors import IdentityUnavailableError, LedgerQueryError, LedgerWriteError
from services.patronage.models import (
    DEFAULT_ZONE,
    FIELD_EXPIRATION_DATE,
    FIELD_PRODUCT_IDENTIFIER,
    FIELD_PURCHASES,
    FIELD_PURCHASE_DATE,
    FIELD_USER_RECORD_ID,
    RECORD_TYPE_PURCHASE,
    RECORD_TYPE_USER,
    FieldAfter,
    FieldEquals,
    LedgerPredicate,
    LedgerRecord,
    MatchAll,
    coerce_datetime,
)

logger = logging.getLogger(__name__)

_PURCHASE_COLUMNS = {
    FIELD_USER_RECORD_ID: PatronPurchaseRow.user_record_id,
    FIELD_PRODUCT_IDENTIFIER: PatronPurchaseRow.product_identifier,
    FIELD_PURCHASE_DATE: PatronPurchaseRow.purchase_date,
    FIELD_EXPIRATION_DATE: PatronPurchaseRow.expiration_date,
}


def _to_utc(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _purchase_record(row: PatronPurchaseRow) -> LedgerRecord:
    fields: Dict[str, Any] = {
        FIELD_USER_RECORD_ID: row.user_record_id,
        FIELD_PRODUCT_IDENTIFIER: row.product_identifier,
        FIELD_PURCHASE_DATE: coerce_datetime(row.purchase_date),
    }
    if row.expiration_date is not None:
        fields[FIELD_EXPIRATION_DATE] = coerce_datetime(row.expiration_date)
    return LedgerRecord(record_type=RECORD_TYPE_PURCHASE, fields=fields, record_id=row.id, zone=row.zone)


class SqlLedger:
    """Ledger implementation over a SQLAlchemy session factory.

    Dates are stored as naive UTC. ``user_id_provider`` supplies the signed-in
    identity; a ``User`` row is created the first time an identity is seen.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        user_id_provider: Callable[[], Optional[str]],
    ) -> None:
        self._session_factory = session_factory
        self._user_id_provider = user_id_provider

    async def current_user_id(self) -> Optional[str]:
        user_id = self._user_id_provider()
        if not user_id:
            return None
        await asyncio.to_thread(self._ensure_user, user_id)
        return user_id

    async def fetch_record(self, record_id: str) -> Optional[LedgerRecord]:
        return await asyncio.to_thread(self._fetch_record, record_id)

    async def query(self, record_type: str, predicate: LedgerPredicate) -> List[LedgerRecord]:
        return await asyncio.to_thread(self._query, record_type, predicate)

    async def insert(self, record: LedgerRecord) -> LedgerRecord:
        return await asyncio.to_thread(self._insert, record)

    # ------------------------------------------------------------------

    def _ensure_user(self, user_id: str) -> None:
        session = self._session_factory()
        try:
            if session.get(PatronUserRow, user_id) is not None:
                return
            session.add(PatronUserRow(record_name=user_id))
            try:
                session.commit()
                logger.info("Created ledger user %s.", user_id)
            except IntegrityError:
                # Another caller created the same user first.
                session.rollback()
                if session.get(PatronUserRow, user_id) is None:
                    raise
                logger.debug("Ledger user %s already exists.", user_id)
        except SQLAlchemyError as exc:
            session.rollback()
            raise IdentityUnavailableError(f"Could not load ledger user {user_id}.", cause=exc) from exc
        finally:
            session.close()

    def _purchase_ids_by_user(self, session: Session, user_ids: List[str]) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return grouped
        rows = session.execute(
            select(PatronPurchaseRow.user_record_id, PatronPurchaseRow.id)
            .where(PatronPurchaseRow.user_record_id.in_(user_ids))
            .order_by(PatronPurchaseRow.purchase_date)
        )
        for user_id, purchase_id in rows:
            grouped[user_id].append(purchase_id)
        return grouped

    def _fetch_record(self, record_id: str) -> Optional[LedgerRecord]:
        session = self._session_factory()
        try:
            user = session.get(PatronUserRow, record_id)
            if user is not None:
                purchases = self._purchase_ids_by_user(session, [user.record_name])[user.record_name]
                return LedgerRecord(
                    record_type=RECORD_TYPE_USER,
                    fields={FIELD_PURCHASES: purchases},
                    record_id=user.record_name,
                )
            purchase = session.get(PatronPurchaseRow, record_id)
            return _purchase_record(purchase) if purchase is not None else None
        except SQLAlchemyError as exc:
            raise LedgerQueryError(f"Could not fetch record {record_id}.", cause=exc) from exc
        finally:
            session.close()

    def _query(self, record_type: str, predicate: LedgerPredicate) -> List[LedgerRecord]:
        session = self._session_factory()
        try:
            if record_type == RECORD_TYPE_PURCHASE:
                return self._query_purchases(session, predicate)
            if record_type == RECORD_TYPE_USER:
                return self._query_users(session, predicate)
            raise LedgerQueryError(f"Unknown record type {record_type}.")
        except SQLAlchemyError as exc:
            raise LedgerQueryError(f"Query on {record_type} failed.", cause=exc) from exc
        finally:
            session.close()

    def _query_purchases(self, session: Session, predicate: LedgerPredicate) -> List[LedgerRecord]:
        statement = select(PatronPurchaseRow).order_by(PatronPurchaseRow.purchase_date)
        if isinstance(predicate, FieldEquals):
            column = _PURCHASE_COLUMNS.get(predicate.field_name)
            if column is None:
                raise LedgerQueryError(f"Purchases cannot be filtered by {predicate.field_name}.")
            statement = statement.where(column == _to_utc(predicate.value))
        elif isinstance(predicate, FieldAfter):
            column = _PURCHASE_COLUMNS.get(predicate.field_name)
            if column is None:
                raise LedgerQueryError(f"Purchases cannot be filtered by {predicate.field_name}.")
            statement = statement.where(column > _to_utc(predicate.value))
        elif not isinstance(predicate, MatchAll):
            raise LedgerQueryError(f"Unsupported predicate {predicate!r}.")
        return [_purchase_record(row) for row in session.scalars(statement)]

    def _query_users(self, session: Session, predicate: LedgerPredicate) -> List[LedgerRecord]:
        if not isinstance(predicate, MatchAll):
            raise LedgerQueryError("Users can only be listed in full.")
        user_ids = list(session.scalars(select(PatronUserRow.record_name).order_by(PatronUserRow.created_at)))
        grouped = self._purchase_ids_by_user(session, user_ids)
        return [
            LedgerRecord(record_type=RECORD_TYPE_USER, fields={FIELD_PURCHASES: grouped[user_id]}, record_id=user_id)
            for user_id in user_ids
        ]

    def _insert(self, record: LedgerRecord) -> LedgerRecord:
        if record.record_type != RECORD_TYPE_PURCHASE:
            raise LedgerWriteError(f"Only {RECORD_TYPE_PURCHASE} records can be inserted.")
        fields = record.fields
        purchase_date = coerce_datetime(fields.get(FIELD_PURCHASE_DATE))
        if purchase_date is None or not fields.get(FIELD_USER_RECORD_ID):
            raise LedgerWriteError("Purchase records need a user and a purchase date.")
        expiration_date = coerce_datetime(fields.get(FIELD_EXPIRATION_DATE))
        row = PatronPurchaseRow(
            zone=record.zone or DEFAULT_ZONE,
            user_record_id=str(fields[FIELD_USER_RECORD_ID]),
            product_identifier=str(fields.get(FIELD_PRODUCT_IDENTIFIER) or ""),
            purchase_date=_to_utc(purchase_date),
            expiration_date=_to_utc(expiration_date),
        )
        if record.record_id:
            row.id = record.record_id
        session = self._session_factory()
        try:
            session.add(row)
            session.commit()
            saved = _purchase_record(row)
        except SQLAlchemyError as exc:
            session.rollback()
            raise LedgerWriteError("Could not insert purchase record.", cause=exc) from exc
        finally:
            session.close()
        logger.debug("Inserted purchase %s for %s.", saved.record_id, row.user_record_id)
        return saved


__all__ = ["SqlLedger"]
