from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_code(value: str) -> str:
    return value.strip().upper()


class ConversionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_currency: str = Field(..., alias="from", min_length=3, max_length=3)
    to_currency: str = Field(..., alias="to", min_length=3, max_length=3)
    amount: Decimal

    @field_validator("from_currency", "to_currency", mode="before")
    @classmethod
    def _validate_currency(cls, value: str) -> str:
        if isinstance(value, str):
            return _normalize_code(value)
        return value

    @field_validator("amount")
    @classmethod
    def _validate_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("amount must be a finite number")
        return value


class ConversionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float
    from_currency: str = Field(..., alias="from")
    to_currency: str = Field(..., alias="to")
    converted_amount: str = Field(..., alias="convertedAmount")
    last_update: datetime | None = Field(default=None, alias="lastUpdate")


class ConversionErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float
    from_currency: str = Field(..., alias="from")
    to_currency: str = Field(..., alias="to")
    error: str


ConversionResult = ConversionResponse | ConversionErrorResponse


class CurrencyListResponse(BaseModel):
    currencies: list[str]


class RateOut(BaseModel):
    currency: str
    value: Decimal
    updated_at: datetime
    has_automatic_update: bool


class RateUpsertRequest(BaseModel):
    rates: dict[str, Decimal] = Field(..., min_length=1)
    has_automatic_update: bool = False

    @field_validator("rates")
    @classmethod
    def _validate_rates(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        normalized: dict[str, Decimal] = {}
        for code, rate in value.items():
            key = _normalize_code(code)
            if len(key) != 3:
                raise ValueError(f"currency code must have 3 letters: {code!r}")
            if not rate.is_finite() or rate <= 0:
                raise ValueError(f"rate for {key} must be positive")
            normalized[key] = rate
        return normalized


class RateUpsertResponse(BaseModel):
    rates: list[RateOut]


class HealthResponse(BaseModel):
    status: str
    cache_connected: bool
