from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, HTTPException

from app.api.routes import get_rate, router
from app.db import Base, build_engine, build_session_factory
from app.models import CurrencyRate
from app.services.converter import CurrencyConverter
from app.services.rate_api import RateApiClient
from app.services.rate_store import RateStore

_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
_EUR_UPDATED = datetime(2026, 10, 19, 6, 0, tzinfo=UTC)
_GBP_UPDATED = datetime(2026, 10, 18, 20, 0, tzinfo=UTC)


class _MemoryCache:
    def __init__(self) -> None:
        self.values: dict[str, Any] = {}

    @property
    def connected(self) -> bool:
        return True

    async def get_json(self, key: str) -> Any | None:
        return self.values.get(key)

    async def set_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        self.values[key] = json.loads(json.dumps(payload))

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


def _row(currency: str, value: str, updated_at: datetime, automatic: bool) -> CurrencyRate:
    return CurrencyRate(
        currency=currency,
        value=Decimal(value),
        has_automatic_update=automatic,
        created_at=updated_at,
        updated_at=updated_at,
    )


def _rate_api(handler=None) -> RateApiClient:
    def _default(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"base": "USD", "rates": {"EUR": 0.93, "CAD": 1.37}})

    transport = httpx.MockTransport(handler or _default)
    return RateApiClient(
        "https://rates.example/latest",
        client=httpx.AsyncClient(transport=transport),
        clock=lambda: _NOW,
    )


async def _build_app(tmp_path, rate_api: RateApiClient | None = None):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'routes_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = build_session_factory(engine)
    async with session_factory() as session:
        session.add_all(
            [
                _row("USD", "1", _EUR_UPDATED, automatic=False),
                _row("EUR", "0.9", _EUR_UPDATED, automatic=True),
                _row("GBP", "0.8", _GBP_UPDATED, automatic=False),
            ]
        )
        await session.commit()

    cache = _MemoryCache()
    rate_api = rate_api or _rate_api()
    rate_store = RateStore(
        session_factory=session_factory,
        cache=cache,
        refresher=rate_api,
        clock=lambda: _NOW,
    )
    app = FastAPI()
    app.include_router(router, prefix="/v1")
    app.state.cache_client = cache
    app.state.rate_api = rate_api
    app.state.rate_store = rate_store
    app.state.converter = CurrencyConverter(rate_store, base_currency="USD")
    return app, engine, rate_store


def _http_client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_convert_endpoint_returns_converted_amount(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get(
                "/v1/convert", params={"from": "eur", "to": "USD", "amount": "100"}
            )
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.json() == {
        "amount": 100.0,
        "from": "EUR",
        "to": "USD",
        "convertedAmount": "111.11",
        "lastUpdate": "2026-10-19T06:00:00Z",
    }


@pytest.mark.asyncio
async def test_convert_endpoint_uses_oldest_timestamp(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get(
                "/v1/convert", params={"from": "EUR", "to": "GBP", "amount": "100"}
            )
    finally:
        await engine.dispose()

    payload = response.json()
    assert payload["convertedAmount"] == "88.89"
    assert payload["lastUpdate"] == "2026-10-18T20:00:00Z"


@pytest.mark.asyncio
async def test_convert_endpoint_returns_error_payload_for_unknown_currency(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get(
                "/v1/convert", params={"from": "EUR", "to": "XYZ", "amount": "5"}
            )
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.json() == {
        "amount": 5.0,
        "from": "EUR",
        "to": "XYZ",
        "error": "Chosen currency not supported yet. param: XYZ",
    }


@pytest.mark.asyncio
async def test_convert_endpoint_rejects_malformed_amount(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get(
                "/v1/convert", params={"from": "EUR", "to": "USD", "amount": "ten"}
            )
    finally:
        await engine.dispose()

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_currencies_endpoint_lists_known_codes(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get("/v1/currencies")
    finally:
        await engine.dispose()

    assert response.json() == {"currencies": ["EUR", "GBP", "USD"]}


@pytest.mark.asyncio
async def test_get_rate_raises_not_found_for_unknown_currency(tmp_path) -> None:
    app, engine, rate_store = await _build_app(tmp_path)
    try:
        with pytest.raises(HTTPException) as exc_info:
            await get_rate("JPY", rate_store=rate_store)
    finally:
        await engine.dispose()

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_upsert_then_convert_uses_new_rate(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            upsert = await client.put(
                "/v1/rates", json={"rates": {"jpy": "150"}, "has_automatic_update": False}
            )
            converted = await client.get(
                "/v1/convert", params={"from": "USD", "to": "JPY", "amount": "2"}
            )
    finally:
        await engine.dispose()

    assert upsert.status_code == 200
    assert upsert.json()["rates"][0]["currency"] == "JPY"
    assert converted.json()["convertedAmount"] == "300.00"
    assert converted.json()["lastUpdate"] == "2026-10-19T12:00:00Z"


@pytest.mark.asyncio
async def test_upsert_rejects_non_positive_rate(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.put("/v1/rates", json={"rates": {"JPY": "-1"}})
    finally:
        await engine.dispose()

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_sync_endpoint_stores_api_snapshot(tmp_path) -> None:
    app, engine, rate_store = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.post("/v1/rates/sync")
        stored = {record.currency: record for record in await rate_store.list_rates()}
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert sorted(item["currency"] for item in response.json()["rates"]) == ["CAD", "EUR", "USD"]
    assert stored["CAD"].value == Decimal("1.37")
    assert stored["CAD"].has_automatic_update is True
    assert stored["GBP"].value == Decimal("0.8")


@pytest.mark.asyncio
async def test_sync_endpoint_reports_bad_gateway_when_api_fails(tmp_path) -> None:
    rate_api = _rate_api(lambda request: httpx.Response(500))
    app, engine, _ = await _build_app(tmp_path, rate_api=rate_api)
    try:
        async with _http_client(app) as client:
            response = await client.post("/v1/rates/sync")
    finally:
        await engine.dispose()

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_health_reports_cache_state(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get("/v1/health")
    finally:
        await engine.dispose()

    assert response.json() == {"status": "ok", "cache_connected": True}


@pytest.mark.asyncio
async def test_convert_endpoint_formats_very_large_amount(tmp_path) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get(
                "/v1/convert", params={"from": "USD", "to": "USD", "amount": "1e27"}
            )
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.json()["convertedAmount"] == "1000000000000000000000000000.00"


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [" eu", "EU", "EURO"])
async def test_convert_endpoint_rejects_malformed_currency_code(tmp_path, code: str) -> None:
    app, engine, _ = await _build_app(tmp_path)
    try:
        async with _http_client(app) as client:
            response = await client.get(
                "/v1/convert", params={"from": code, "to": "USD", "amount": "1"}
            )
    finally:
        await engine.dispose()

    assert response.status_code == 422
