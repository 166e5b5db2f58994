from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from app.schemas import (
    ConversionErrorResponse,
    ConversionRequest,
    ConversionResponse,
    ConversionResult,
    CurrencyListResponse,
    HealthResponse,
    RateOut,
    RateUpsertRequest,
    RateUpsertResponse,
)
from app.services.cache import CacheClient
from app.services.converter import CurrencyConverter
from app.services.rate_api import RateApiClient
from app.services.rate_store import RateStore
from app.services.records import RateRecord, RateRefreshError, UnsupportedCurrencyError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_converter(request: Request) -> CurrencyConverter:
    return request.app.state.converter


def get_rate_store(request: Request) -> RateStore:
    return request.app.state.rate_store


def get_rate_api(request: Request) -> RateApiClient:
    return request.app.state.rate_api


def get_cache(request: Request) -> CacheClient:
    return request.app.state.cache_client


def _record_to_out(record: RateRecord) -> RateOut:
    return RateOut(
        currency=record.currency,
        value=record.value,
        updated_at=record.updated_at,
        has_automatic_update=record.has_automatic_update,
    )


@router.get("/convert", response_model=ConversionResponse | ConversionErrorResponse)
async def convert(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    amount: Decimal = Query(...),
    converter: CurrencyConverter = Depends(get_converter),
) -> ConversionResult:
    try:
        payload = ConversionRequest(
            from_currency=from_currency,
            to_currency=to_currency,
            amount=amount,
        )
    except ValidationError as exc:
        # Codes are length-checked after trimming, so report them like query errors.
        raise RequestValidationError(exc.errors(include_url=False, include_context=False))
    return await converter.convert(payload)


@router.get("/currencies", response_model=CurrencyListResponse)
async def list_currencies(
    rate_store: RateStore = Depends(get_rate_store),
) -> CurrencyListResponse:
    currencies = await rate_store.get_known_currencies()
    return CurrencyListResponse(currencies=sorted(currencies))


@router.get("/rates", response_model=list[RateOut])
async def list_rates(
    rate_store: RateStore = Depends(get_rate_store),
) -> list[RateOut]:
    return [_record_to_out(record) for record in await rate_store.list_rates()]


@router.get("/rates/{currency}", response_model=RateOut)
async def get_rate(
    currency: str,
    rate_store: RateStore = Depends(get_rate_store),
) -> RateOut:
    try:
        record = await rate_store.get_rate(currency)
    except UnsupportedCurrencyError as exc:
        raise HTTPException(status_code=404, detail=f"currency not supported: {exc.currency}")
    except RateRefreshError as exc:
        logger.warning("Rate refresh failed currency=%s: %s", currency, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="rate refresh failed")
    return _record_to_out(record)


@router.put("/rates", response_model=RateUpsertResponse)
async def upsert_rates(
    payload: RateUpsertRequest,
    rate_store: RateStore = Depends(get_rate_store),
) -> RateUpsertResponse:
    records = await rate_store.upsert_rates(
        payload.rates, has_automatic_update=payload.has_automatic_update
    )
    return RateUpsertResponse(rates=[_record_to_out(record) for record in records])


@router.post("/rates/sync", response_model=RateUpsertResponse)
async def sync_rates(
    rate_store: RateStore = Depends(get_rate_store),
    rate_api: RateApiClient = Depends(get_rate_api),
) -> RateUpsertResponse:
    try:
        latest = await rate_api.fetch_latest_rates()
    except RateRefreshError as exc:
        logger.warning("Rate sync failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="rate sync failed")

    records = await rate_store.upsert_rates(latest, has_automatic_update=True)
    return RateUpsertResponse(rates=[_record_to_out(record) for record in records])


@router.get("/health", response_model=HealthResponse)
async def health(cache: CacheClient = Depends(get_cache)) -> HealthResponse:
    return HealthResponse(status="ok", cache_connected=cache.connected)
