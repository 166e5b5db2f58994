from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import router
from app.config import get_settings
from app.db import SessionFactory, close_db, init_db
from app.logging import configure_logging
from app.services.cache import CacheClient
from app.services.converter import CurrencyConverter
from app.services.rate_api import RateApiClient
from app.services.rate_store import RateStore
from app.services.records import RateRefreshError

configure_logging()
settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    cache_client = CacheClient(settings.redis_url)
    await cache_client.connect()

    rate_api = RateApiClient(
        settings.rate_api_url,
        base_currency=settings.base_currency,
        timeout_seconds=settings.request_timeout_seconds,
    )
    rate_store = RateStore(
        session_factory=SessionFactory,
        cache=cache_client,
        refresher=rate_api,
        ttl_seconds=settings.rate_cache_ttl_seconds,
    )
    app.state.cache_client = cache_client
    app.state.rate_api = rate_api
    app.state.rate_store = rate_store
    app.state.converter = CurrencyConverter(rate_store, base_currency=settings.base_currency)

    if settings.sync_rates_on_startup:
        try:
            latest = await rate_api.fetch_latest_rates()
            await rate_store.upsert_rates(latest, has_automatic_update=True)
        except RateRefreshError as exc:
            logger.warning("Startup rate sync failed; serving stored rates: %s", exc)

    yield

    await rate_api.close()
    await cache_client.close()
    await close_db()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(router, prefix=settings.api_prefix)
