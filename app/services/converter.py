from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, localcontext

from app.schemas import (
    ConversionErrorResponse,
    ConversionRequest,
    ConversionResponse,
    ConversionResult,
)
from app.services.rate_store import RateStore
from app.services.records import RateRecord, RateServiceError, UnsupportedCurrencyError

logger = logging.getLogger(__name__)

ERROR_UNSUPPORTED_CURRENCY = "Chosen currency not supported yet."
_CENT = Decimal("0.01")


class CurrencyConverter:
    """Converts amounts between currencies by hopping through the base currency."""

    def __init__(self, rate_store: RateStore, base_currency: str = "USD") -> None:
        self._rate_store = rate_store
        self._base_currency = base_currency.upper()

    @property
    def base_currency(self) -> str:
        return self._base_currency

    async def convert(self, request: ConversionRequest) -> ConversionResult:
        known = await self._rate_store.get_known_currencies()
        invalid = _unknown_codes([request.from_currency, request.to_currency], known)
        if invalid:
            return self._error(request, invalid)

        last_update: datetime | None = None
        amount_in_base = request.amount

        try:
            if request.from_currency != self._base_currency:
                source = await self._resolve(request.from_currency)
                amount_in_base = request.amount / source.value
                last_update = _earliest(last_update, source.updated_at)

            converted = amount_in_base
            if request.to_currency != self._base_currency:
                target = await self._resolve(request.to_currency)
                converted = amount_in_base * target.value
                last_update = _earliest(last_update, target.updated_at)
        except UnsupportedCurrencyError as exc:
            return self._error(request, [exc.currency])

        return ConversionResponse(
            amount=float(request.amount),
            from_currency=request.from_currency,
            to_currency=request.to_currency,
            converted_amount=format_amount(converted),
            last_update=last_update,
        )

    async def _resolve(self, currency: str) -> RateRecord:
        try:
            return await self._rate_store.get_rate(currency)
        except UnsupportedCurrencyError:
            raise
        except RateServiceError as exc:
            logger.warning("Rate unavailable currency=%s: %s", currency, exc)
            raise UnsupportedCurrencyError(currency, str(exc)) from exc

    def _error(self, request: ConversionRequest, codes: list[str]) -> ConversionErrorResponse:
        logger.info(
            "Unsupported currency in conversion from=%s to=%s invalid=%s",
            request.from_currency,
            request.to_currency,
            ",".join(codes),
        )
        return ConversionErrorResponse(
            amount=float(request.amount),
            from_currency=request.from_currency,
            to_currency=request.to_currency,
            error=f"{ERROR_UNSUPPORTED_CURRENCY} param: {', '.join(codes)}",
        )


def format_amount(value: Decimal) -> str:
    with localcontext() as ctx:
        # Room for every integer digit plus the two cents digits.
        ctx.prec = max(ctx.prec, value.adjusted() + 3)
        rounded = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if rounded.is_zero():
        rounded = rounded.copy_abs()
    return f"{rounded:f}"


def _unknown_codes(codes: list[str], known: set[str]) -> list[str]:
    invalid: list[str] = []
    for code in codes:
        if code not in known and code not in invalid:
            invalid.append(code)
    return invalid


def _earliest(current: datetime | None, candidate: datetime) -> datetime:
    if current is None or candidate < current:
        return candidate
    return current
