"""Public app lookup client used to count ratings for the current version."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from services.patronage.errors import ResponseParseError, ReviewLookupError
from services.patronage.settings import DEFAULT_LOOKUP_URL

logger = logging.getLogger(__name__)

_RATING_COUNT_KEY = "userRatingCountForCurrentVersion"


def extract_rating_count(payload: Any) -> int:
    """Pull the first result's current-version rating count out of a lookup body."""
    if not isinstance(payload, dict):
        raise ResponseParseError("Lookup response is not a JSON object.")
    results = payload.get("results")
    if not isinstance(results, list):
        raise ResponseParseError("Lookup response has no results list.")
    if not results or not isinstance(results[0], dict):
        raise ResponseParseError("Lookup response contained no app entry.")
    count = results[0].get(_RATING_COUNT_KEY)
    if isinstance(count, bool) or not isinstance(count, int):
        raise ResponseParseError(f"Lookup entry is missing {_RATING_COUNT_KEY}.")
    return count


@dataclass(slots=True)
class ReviewLookupClient:
    """HTTP client wrapper for the app metadata lookup endpoint."""

    base_url: str = DEFAULT_LOOKUP_URL
    timeout: float = 10.0

    async def fetch_rating_count(self, app_id: str) -> int:
        logger.info("Looking up review count for app %s", app_id)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.base_url, params={"id": app_id})
        except httpx.HTTPError as exc:
            raise ReviewLookupError(f"Review lookup request failed for app {app_id}.", cause=exc) from exc
        if response.status_code >= 400:
            logger.warning("Review lookup returned HTTP %s for app %s", response.status_code, app_id)
            raise ReviewLookupError(f"Review lookup returned HTTP {response.status_code}.")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponseParseError("Review lookup body is not valid JSON.", cause=exc) from exc
        return extract_rating_count(payload)


__all__ = ["ReviewLookupClient", "extract_rating_count"]
