from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from app.services.records import RateRecord, RateRefreshError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateApiClient:
    """Fetches rates quoted per one unit of the base currency.

    Speaks the Frankfurter ``/latest`` format:
    ``GET /latest?from=USD&to=EUR`` -> ``{"base": "USD", "rates": {"EUR": 0.9}}``.
    Failures raise :class:`RateRefreshError`; nothing is retried.
    """

    def __init__(
        self,
        api_url: str,
        base_currency: str = "USD",
        timeout_seconds: int = 10,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._api_url = api_url
        self._base_currency = base_currency.upper()
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock

    async def update_currency(self, record: RateRecord) -> RateRecord:
        currency = record.currency.upper()
        if currency == self._base_currency:
            value = Decimal("1")
        else:
            rates = await self._fetch_rates({"from": self._base_currency, "to": currency})
            if currency not in rates:
                raise RateRefreshError(f"Rate API returned no rate for {currency}")
            value = rates[currency]

        logger.info("Refreshed rate currency=%s old=%s new=%s", currency, record.value, value)
        return RateRecord(
            currency=currency,
            value=value,
            updated_at=self._clock(),
            has_automatic_update=record.has_automatic_update,
        )

    async def fetch_latest_rates(self) -> dict[str, Decimal]:
        rates = await self._fetch_rates({"from": self._base_currency})
        rates[self._base_currency] = Decimal("1")
        return rates

    async def _fetch_rates(self, params: dict[str, str]) -> dict[str, Decimal]:
        try:
            response = await self._client.get(self._api_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateRefreshError(f"Rate API request failed: {type(exc).__name__}: {exc}") from exc
        return _parse_rates(payload)

    async def close(self) -> None:
        await self._client.aclose()


def _parse_rates(payload: Any) -> dict[str, Decimal]:
    raw_rates = payload.get("rates") if isinstance(payload, dict) else None
    if not isinstance(raw_rates, dict):
        raise RateRefreshError("Rate API payload has no rates object")

    rates: dict[str, Decimal] = {}
    for code, raw_value in raw_rates.items():
        try:
            value = Decimal(str(raw_value))
        except InvalidOperation as exc:
            raise RateRefreshError(f"Invalid rate for {code}: {raw_value!r}") from exc
        if not value.is_finite() or value <= 0:
            raise RateRefreshError(f"Invalid rate for {code}: {raw_value!r}")
        rates[str(code).upper()] = value
    return rates
