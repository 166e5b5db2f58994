from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import CurrencyRate
from app.services.cache import CacheClient
from app.services.rate_api import RateApiClient
from app.services.records import (
    RateRecord,
    RateRefreshError,
    UnsupportedCurrencyError,
    as_utc,
)

logger = logging.getLogger(__name__)

CURRENCY_DATA_CACHE_KEY_PREFIX = "currency_data_cache_key_"
AVAILABLE_CURRENCIES_CACHE_KEY = "available_currencies_cache_key"
DEFAULT_CACHE_TTL_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(UTC)


def currency_cache_key(currency: str) -> str:
    return f"{CURRENCY_DATA_CACHE_KEY_PREFIX}{currency.upper()}"


class RateStore:
    """Resolves rate records from the cache, falling back to the database.

    Database reads refresh the record through the rate API when it was not
    updated today and is flagged for automatic update. Whatever is returned
    from the database path is written back to the cache.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheClient,
        refresher: RateApiClient,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._refresher = refresher
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    async def get_rate(self, currency: str) -> RateRecord:
        code = currency.strip().upper()
        cached = await self._get_cached_record(code)
        if cached is not None:
            return cached

        record = await self._load_record(code)
        await self._cache_record(record)
        return record

    async def get_known_currencies(self) -> set[str]:
        cached = await self._cache.get_json(AVAILABLE_CURRENCIES_CACHE_KEY)
        if cached:
            return {str(code) for code in cached}

        codes = await self._load_known_currencies()
        await self._cache.set_json(
            AVAILABLE_CURRENCIES_CACHE_KEY, sorted(codes), ttl_seconds=self._ttl_seconds
        )
        return codes

    async def list_rates(self) -> list[RateRecord]:
        async with self._session_factory() as session:
            stmt = select(CurrencyRate).order_by(CurrencyRate.currency.asc())
            rows = list((await session.execute(stmt)).scalars().all())
        return [_row_to_record(row) for row in rows]

    async def upsert_rates(
        self, rates: Mapping[str, Decimal], *, has_automatic_update: bool = False
    ) -> list[RateRecord]:
        normalized = {code.strip().upper(): Decimal(value) for code, value in rates.items()}
        invalid = sorted(code for code, value in normalized.items() if value <= 0)
        if invalid:
            raise ValueError(f"Rates must be positive: {', '.join(invalid)}")
        if not normalized:
            return []

        now = self._clock()
        records: list[RateRecord] = []
        async with self._session_factory() as session:
            for code, value in sorted(normalized.items()):
                row = await session.get(CurrencyRate, code)
                if row is None:
                    row = CurrencyRate(currency=code, created_at=now)
                    session.add(row)
                row.value = value
                row.has_automatic_update = has_automatic_update
                row.updated_at = now
                records.append(
                    RateRecord(
                        currency=code,
                        value=value,
                        updated_at=now,
                        has_automatic_update=has_automatic_update,
                    )
                )
            await session.commit()

        for record in records:
            await self._cache_record(record)
        await self._cache.delete(AVAILABLE_CURRENCIES_CACHE_KEY)
        logger.info(
            "Upserted rates count=%s automatic_update=%s", len(records), has_automatic_update
        )
        return records

    async def _get_cached_record(self, code: str) -> RateRecord | None:
        payload = await self._cache.get_json(currency_cache_key(code))
        if not payload:
            return None
        try:
            record = RateRecord.from_jsonable(payload)
        except (KeyError, TypeError, ValueError, InvalidOperation):
            logger.warning("Discarding malformed cached rate currency=%s", code)
            return None
        if not record.is_usable():
            return None
        return record

    async def _load_record(self, code: str) -> RateRecord:
        async with self._session_factory() as session:
            row = await session.get(CurrencyRate, code)
            if row is None:
                raise UnsupportedCurrencyError(code)

            record = _row_to_record(row)
            if record.updated_on(self._clock()) or not record.has_automatic_update:
                if not record.is_usable():
                    raise UnsupportedCurrencyError(code, "stored rate is not positive")
                return record

            logger.info(
                "Refreshing stale rate currency=%s updated_at=%s",
                code,
                record.updated_at.isoformat(),
            )
            refreshed = await self._refresher.update_currency(record)
            if not refreshed.is_usable():
                raise RateRefreshError(f"Rate API returned a non-positive rate for {code}")

            row.value = refreshed.value
            row.updated_at = refreshed.updated_at
            await session.commit()
            return refreshed

    async def _load_known_currencies(self) -> set[str]:
        async with self._session_factory() as session:
            stmt = select(CurrencyRate.currency).distinct()
            return set((await session.execute(stmt)).scalars().all())

    async def _cache_record(self, record: RateRecord) -> None:
        await self._cache.set_json(
            currency_cache_key(record.currency),
            record.to_jsonable(),
            ttl_seconds=self._ttl_seconds,
        )


def _row_to_record(row: CurrencyRate) -> RateRecord:
    return RateRecord(
        currency=row.currency,
        value=Decimal(str(row.value)),
        updated_at=as_utc(row.updated_at),
        has_automatic_update=bool(row.has_automatic_update),
    )
