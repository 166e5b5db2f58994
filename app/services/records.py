from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any


class RateServiceError(RuntimeError):
    """Base error for rate lookups and refreshes."""


class UnsupportedCurrencyError(RateServiceError):
    """Raised when a currency has no usable rate record."""

    def __init__(self, currency: str, reason: str | None = None) -> None:
        self.currency = currency
        message = f"Currency not supported: {currency}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class RateRefreshError(RateServiceError):
    """Raised when the rate API cannot provide a fresh rate."""


@dataclass(slots=True, frozen=True)
class RateRecord:
    currency: str
    value: Decimal
    updated_at: datetime
    has_automatic_update: bool = False

    def is_usable(self) -> bool:
        return self.value > 0

    def updated_on(self, day: datetime) -> bool:
        return as_utc(self.updated_at).date() == as_utc(day).date()

    def to_jsonable(self) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "value": str(self.value),
            "updated_at": as_utc(self.updated_at).isoformat(),
            "has_automatic_update": self.has_automatic_update,
        }

    @classmethod
    def from_jsonable(cls, payload: dict[str, Any]) -> RateRecord:
        return cls(
            currency=payload["currency"],
            value=Decimal(payload["value"]),
            updated_at=as_utc(datetime.fromisoformat(payload["updated_at"])),
            has_automatic_update=bool(payload.get("has_automatic_update", False)),
        )


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
