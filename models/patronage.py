from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, String, func

from database import Base


class PatronUserRow(Base):
    """Ledger ``User`` record, keyed by the identity provider's record name."""

    __tablename__ = "patronage_users"

    record_name = Column(String, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PatronPurchaseRow(Base):
    """Ledger ``Purchase`` record. Rows are only ever inserted."""

    __tablename__ = "patronage_purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    zone = Column(String, nullable=False, default="_defaultZone")
    user_record_id = Column(String, nullable=False, index=True)
    product_identifier = Column(String, nullable=False)
    purchase_date = Column(DateTime(timezone=True), nullable=False, index=True)
    expiration_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
