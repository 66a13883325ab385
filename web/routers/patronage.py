"""Patronage endpoints consumed by the app's support screen."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from schemas.api.patronage import (
    PatronageErrorDetail,
    PatronageProductResponse,
    PatronagePurchaseRequest,
    PatronagePurchaseResponse,
    PatronageRestoreResponse,
    PatronageStatusResponse,
)
from services.patronage import (
    PatronageError,
    PaymentsDisabledError,
    Product,
    PurchaseCoordinator,
    PurchaseOutcome,
    StoreUnavailableError,
    UnknownProductError,
)

router = APIRouter(prefix="/patronage", tags=["Patronage"])

logger = logging.getLogger(__name__)

_PENDING_STATUS = "pending"
_IN_FLIGHT: Set["asyncio.Task[PurchaseOutcome]"] = set()


def get_coordinator(request: Request) -> PurchaseCoordinator:
    coordinator = getattr(request.app.state, "patronage_coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "patronage.unavailable", "message": "Patronage is not configured."},
        )
    return coordinator


def _error_detail(error: Optional[BaseException]) -> Optional[PatronageErrorDetail]:
    if error is None:
        return None
    if isinstance(error, PatronageError):
        return PatronageErrorDetail(**error.to_detail())
    return PatronageErrorDetail(code="patronage.store_error", message=str(error) or type(error).__name__)


def _http_error(status_code: int, error: Optional[BaseException], *, code: str, message: str) -> HTTPException:
    detail = _error_detail(error) or PatronageErrorDetail(code=code, message=message)
    return HTTPException(status_code=status_code, detail=detail.model_dump())


def _serialize_product(product: Product, coordinator: PurchaseCoordinator) -> PatronageProductResponse:
    return PatronageProductResponse(
        productId=product.identifier,
        title=product.title,
        description=product.description,
        price=str(product.price),
        priceLocale=product.price_locale,
        months=coordinator.settings.duration_for(product.identifier),
    )


@router.get("/products", response_model=List[PatronageProductResponse])
async def list_patronage_products(
    refresh: bool = False,
    coordinator: PurchaseCoordinator = Depends(get_coordinator),
) -> List[PatronageProductResponse]:
    """Return the catalog sorted by price, fetching it from the Store when needed."""
    if refresh or not coordinator.products:
        result = await coordinator.fetch_catalog()
        if result.error is not None and not coordinator.products:
            raise _http_error(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                result.error,
                code="patronage.store_unavailable",
                message="The patronage catalog is unavailable.",
            )
    return [_serialize_product(product, coordinator) for product in coordinator.products]


@router.get("/status", response_model=PatronageStatusResponse)
async def read_patronage_status(
    refresh: bool = False,
    coordinator: PurchaseCoordinator = Depends(get_coordinator),
) -> PatronageStatusResponse:
    lifetime_count: Optional[int] = None
    if refresh:
        snapshot = await coordinator.refresh()
        lifetime = await coordinator.fetch_lifetime_patron_count()
        if lifetime.error is None:
            lifetime_count = lifetime.count
    else:
        snapshot = coordinator.state.snapshot()
    return PatronageStatusResponse(
        active=snapshot.is_active(coordinator.now()),
        expirationDate=snapshot.expiration_date,
        patronCount=snapshot.patron_count,
        lifetimePatronCount=lifetime_count,
        reviewCount=snapshot.review_count,
        products=[_serialize_product(product, coordinator) for product in snapshot.products],
        pendingPayments=len(coordinator.pending_purchases()),
    )


@router.post("/purchases", response_model=PatronagePurchaseResponse)
async def create_patronage_purchase(
    payload: PatronagePurchaseRequest,
    response: Response,
    coordinator: PurchaseCoordinator = Depends(get_coordinator),
) -> PatronagePurchaseResponse:
    """Purchase a patronage product.

    Answers 202 when the Store has not settled the payment within the configured
    wait; the purchase keeps running and is recorded once the Store reports it.
    """
    task = asyncio.ensure_future(coordinator.purchase_by_identifier(payload.productId))
    _IN_FLIGHT.add(task)
    task.add_done_callback(_IN_FLIGHT.discard)
    try:
        outcome = await asyncio.wait_for(asyncio.shield(task), timeout=coordinator.settings.purchase_wait_seconds)
    except asyncio.TimeoutError:
        logger.info("Purchase of %s still pending after %.1fs.", payload.productId, coordinator.settings.purchase_wait_seconds)
        response.status_code = status.HTTP_202_ACCEPTED
        return PatronagePurchaseResponse(
            productId=payload.productId,
            status=_PENDING_STATUS,
            success=False,
            recorded=False,
        )

    error = outcome.error
    if isinstance(error, PaymentsDisabledError):
        raise _http_error(status.HTTP_403_FORBIDDEN, error, code=error.code, message=error.message)
    if isinstance(error, UnknownProductError):
        raise _http_error(status.HTTP_404_NOT_FOUND, error, code=error.code, message=error.message)
    if isinstance(error, StoreUnavailableError):
        raise _http_error(status.HTTP_503_SERVICE_UNAVAILABLE, error, code=error.code, message=error.message)
    if not outcome.success:
        raise _http_error(
            status.HTTP_402_PAYMENT_REQUIRED,
            error,
            code="patronage.purchase_failed",
            message="The Store reported a failed purchase.",
        )

    if outcome.recorded:
        await coordinator.fetch_patronage_expiration()
    return PatronagePurchaseResponse(
        productId=payload.productId,
        paymentId=outcome.payment.payment_id if outcome.payment else None,
        status=outcome.state.value,
        success=outcome.success,
        recorded=outcome.recorded,
        expirationDate=coordinator.expiration_date,
        error=_error_detail(error),
    )


@router.post("/restore", response_model=PatronageRestoreResponse)
async def restore_patronage_purchases(
    coordinator: PurchaseCoordinator = Depends(get_coordinator),
) -> PatronageRestoreResponse:
    outcome = await coordinator.restore_purchases()
    if not outcome.success:
        raise _http_error(
            status.HTTP_502_BAD_GATEWAY,
            outcome.error,
            code="patronage.restore_failed",
            message="Restoring purchases failed.",
        )
    return PatronageRestoreResponse(success=True, restoredProductIds=outcome.restored)
