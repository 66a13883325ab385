from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from database import build_engine, build_session_factory, create_schema
from models.patronage import PatronUserRow
from services.patronage import IdentityUnavailableError, LedgerQueryError, LedgerWriteError, PurchaseRecord
from services.patronage.models import (
    FIELD_EXPIRATION_DATE,
    FIELD_PURCHASES,
    FIELD_PURCHASE_DATE,
    FIELD_USER_RECORD_ID,
    RECORD_TYPE_PURCHASE,
    RECORD_TYPE_USER,
    FieldAfter,
    FieldEquals,
    LedgerRecord,
    MatchAll,
)
from services.patronage.sql_ledger import SqlLedger

UTC = timezone.utc


class _Identity:
    def __init__(self, user_id: Optional[str]) -> None:
        self.user_id = user_id

    def __call__(self) -> Optional[str]:
        return self.user_id


@pytest.fixture()
def identity() -> _Identity:
    return _Identity("user-a")


@pytest.fixture()
def sql_ledger(identity: _Identity):
    engine = build_engine("sqlite://")
    create_schema(engine)
    try:
        yield SqlLedger(build_session_factory(engine), user_id_provider=identity)
    finally:
        engine.dispose()


def _purchase(user_id: str, purchase_date: datetime, expiration_date: Optional[datetime] = None) -> LedgerRecord:
    return PurchaseRecord(
        user_record_id=user_id,
        product_identifier="com.app.patronage.1",
        purchase_date=purchase_date,
        expiration_date=expiration_date,
    ).to_ledger_record()


def test_current_user_creates_user_record(sql_ledger: SqlLedger) -> None:
    async def scenario():
        user_id = await sql_ledger.current_user_id()
        return user_id, await sql_ledger.fetch_record(user_id)

    user_id, record = asyncio.run(scenario())

    assert user_id == "user-a"
    assert record.record_type == RECORD_TYPE_USER
    assert record.fields[FIELD_PURCHASES] == []


def test_current_user_without_identity(sql_ledger: SqlLedger, identity: _Identity) -> None:
    identity.user_id = None

    assert asyncio.run(sql_ledger.current_user_id()) is None
    assert asyncio.run(sql_ledger.fetch_record("user-a")) is None


def test_insert_and_query_by_user(sql_ledger: SqlLedger) -> None:
    purchase_date = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
    expiration_date = datetime(2026, 4, 15, 12, 0, tzinfo=UTC)

    async def scenario():
        await sql_ledger.current_user_id()
        saved = await sql_ledger.insert(_purchase("user-a", purchase_date, expiration_date))
        await sql_ledger.insert(_purchase("user-b", purchase_date))
        mine = await sql_ledger.query(RECORD_TYPE_PURCHASE, FieldEquals(FIELD_USER_RECORD_ID, "user-a"))
        user = await sql_ledger.fetch_record("user-a")
        return saved, mine, user

    saved, mine, user = asyncio.run(scenario())

    assert saved.record_id
    assert [record.record_id for record in mine] == [saved.record_id]
    assert mine[0].fields[FIELD_PURCHASE_DATE] == purchase_date
    assert mine[0].fields[FIELD_EXPIRATION_DATE] == expiration_date
    assert user.fields[FIELD_PURCHASES] == [saved.record_id]


def test_purchase_without_expiration_round_trips_as_missing(sql_ledger: SqlLedger) -> None:
    async def scenario():
        saved = await sql_ledger.insert(_purchase("user-a", datetime(2026, 1, 1, tzinfo=UTC)))
        return await sql_ledger.fetch_record(saved.record_id)

    record = asyncio.run(scenario())

    assert record.record_type == RECORD_TYPE_PURCHASE
    assert FIELD_EXPIRATION_DATE not in record.fields


def test_query_after_date_is_strict(sql_ledger: SqlLedger) -> None:
    since = datetime(2026, 2, 15, 12, 0, tzinfo=UTC)

    async def scenario():
        await sql_ledger.insert(_purchase("A", since))
        await sql_ledger.insert(_purchase("B", since + timedelta(minutes=1)))
        await sql_ledger.insert(_purchase("C", since - timedelta(days=3)))
        return await sql_ledger.query(RECORD_TYPE_PURCHASE, FieldAfter(FIELD_PURCHASE_DATE, since))

    records = asyncio.run(scenario())

    assert [record.fields[FIELD_USER_RECORD_ID] for record in records] == ["B"]


def test_query_users_lists_purchase_references(sql_ledger: SqlLedger, identity: _Identity) -> None:
    async def scenario():
        await sql_ledger.current_user_id()
        identity.user_id = "user-b"
        await sql_ledger.current_user_id()
        saved = await sql_ledger.insert(_purchase("user-b", datetime(2026, 1, 1, tzinfo=UTC)))
        return saved, await sql_ledger.query(RECORD_TYPE_USER, MatchAll())

    saved, users = asyncio.run(scenario())

    by_id = {record.record_id: record.fields[FIELD_PURCHASES] for record in users}
    assert by_id == {"user-a": [], "user-b": [saved.record_id]}


def test_query_rejects_unsupported_filters(sql_ledger: SqlLedger) -> None:
    with pytest.raises(LedgerQueryError):
        asyncio.run(sql_ledger.query(RECORD_TYPE_USER, FieldEquals(FIELD_USER_RECORD_ID, "A")))
    with pytest.raises(LedgerQueryError):
        asyncio.run(sql_ledger.query(RECORD_TYPE_PURCHASE, FieldEquals("zone", "_defaultZone")))
    with pytest.raises(LedgerQueryError):
        asyncio.run(sql_ledger.query("Invoice", MatchAll()))


def test_insert_rejects_invalid_records(sql_ledger: SqlLedger) -> None:
    with pytest.raises(LedgerWriteError):
        asyncio.run(sql_ledger.insert(LedgerRecord(record_type=RECORD_TYPE_USER, record_id="user-a")))
    with pytest.raises(LedgerWriteError):
        asyncio.run(sql_ledger.insert(LedgerRecord(record_type=RECORD_TYPE_PURCHASE, fields={FIELD_USER_RECORD_ID: "A"})))


def test_insert_rejects_duplicate_record_id(sql_ledger: SqlLedger) -> None:
    record = _purchase("A", datetime(2026, 1, 1, tzinfo=UTC))
    record.record_id = "fixed-id"

    asyncio.run(sql_ledger.insert(record))
    with pytest.raises(LedgerWriteError):
        asyncio.run(sql_ledger.insert(record))


def test_missing_tables_surface_as_identity_error() -> None:
    engine = build_engine("sqlite://")
    ledger = SqlLedger(build_session_factory(engine), user_id_provider=lambda: "user-a")
    try:
        with pytest.raises(IdentityUnavailableError):
            asyncio.run(ledger.current_user_id())
    finally:
        engine.dispose()


def test_concurrent_first_lookups_share_one_user(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_schema(engine)
    session_factory = build_session_factory(engine)
    ledger = SqlLedger(session_factory, user_id_provider=lambda: "new-user")

    async def scenario():
        return await asyncio.gather(*(ledger.current_user_id() for _ in range(8)))

    try:
        results = asyncio.run(scenario())
        with session_factory() as session:
            user_rows = session.scalar(select(func.count()).select_from(PatronUserRow))
    finally:
        engine.dispose()

    assert results == ["new-user"] * 8
    assert user_rows == 1


def test_user_created_by_another_caller_is_reused(identity: _Identity) -> None:
    engine = build_engine("sqlite://")
    create_schema(engine)
    with build_session_factory(engine)() as session:
        session.add(PatronUserRow(record_name="user-a"))
        session.commit()

    class StaleLookupSession(Session):
        stale_lookups = 1

        def get(self, entity, ident, **kwargs):
            if entity is PatronUserRow and StaleLookupSession.stale_lookups:
                StaleLookupSession.stale_lookups -= 1
                return None
            return super().get(entity, ident, **kwargs)

    ledger = SqlLedger(
        sessionmaker(bind=engine, class_=StaleLookupSession, autoflush=False, expire_on_commit=False),
        user_id_provider=identity,
    )
    try:
        assert asyncio.run(ledger.current_user_id()) == "user-a"
    finally:
        engine.dispose()
