"""Patronage API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PatronageErrorDetail(BaseModel):
    code: str = Field(..., description="Stable error code, e.g. patronage.payments_disabled.")
    message: str = Field(..., description="Human readable description of the failure.")
    cause: Optional[str] = Field(default=None, description="Underlying collaborator error, when one was wrapped.")


class PatronageProductResponse(BaseModel):
    productId: str = Field(..., description="Store product identifier.")
    title: str
    description: str = ""
    price: str = Field(..., description="Decimal price rendered as a string.")
    priceLocale: str
    months: Optional[int] = Field(default=None, description="Patronage length granted by the product.")


class PatronageStatusResponse(BaseModel):
    active: bool = Field(..., description="True while the current user's patronage has not expired.")
    expirationDate: Optional[datetime] = None
    patronCount: int = Field(..., description="Distinct patrons within the recent window.")
    lifetimePatronCount: Optional[int] = Field(
        default=None,
        description="Users with at least one purchase ever; only computed on refresh.",
    )
    reviewCount: int
    products: List[PatronageProductResponse] = Field(default_factory=list)
    pendingPayments: int = 0


class PatronagePurchaseRequest(BaseModel):
    productId: str = Field(..., min_length=1, description="Identifier of the product to purchase.")


class PatronagePurchaseResponse(BaseModel):
    productId: str
    paymentId: Optional[str] = None
    status: str = Field(..., description="Purchase lifecycle state, or 'pending' while the Store is still deciding.")
    success: bool
    recorded: bool
    expirationDate: Optional[datetime] = None
    error: Optional[PatronageErrorDetail] = None


class PatronageRestoreResponse(BaseModel):
    success: bool
    restoredProductIds: List[str] = Field(default_factory=list)
