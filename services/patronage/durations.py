"""Patronage duration helpers (product identifier -> months -> expiration)."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


def parse_duration_months(
    product_identifier: str,
    overrides: Optional[Mapping[str, int]] = None,
) -> Optional[int]:
    """Return the patronage length in months for ``product_identifier``.

    Explicit ``overrides`` win. Otherwise the identifier is expected to end with
    a dot followed by a positive month count, e.g. ``com.app.patronage.3``.
    """
    if overrides and product_identifier in overrides:
        return overrides[product_identifier]
    suffix = product_identifier.rsplit(".", 1)[-1].strip()
    if not suffix.isdecimal():
        return None
    months = int(suffix)
    return months if months > 0 else None


def add_months(moment: datetime, months: int) -> datetime:
    """Advance ``moment`` by calendar months, clamping to the last day of the month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_expiration(
    product_identifier: str,
    purchase_date: datetime,
    overrides: Optional[Mapping[str, int]] = None,
) -> Optional[datetime]:
    months = parse_duration_months(product_identifier, overrides)
    if months is None:
        logger.warning("Cannot derive a patronage duration from product %s.", product_identifier)
        return None
    try:
        return add_months(purchase_date, months)
    except (ValueError, OverflowError) as exc:
        logger.warning("Patronage of %d months from %s is out of range: %s", months, purchase_date.isoformat(), exc)
        return None


def resolve_purchase_date(current_expiration: Optional[datetime], now: datetime) -> datetime:
    """Extend from a future expiration, otherwise start now."""
    if current_expiration is not None and current_expiration > now:
        return current_expiration
    return now


__all__ = ["add_months", "compute_expiration", "parse_duration_months", "resolve_purchase_date"]
