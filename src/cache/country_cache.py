from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from pydantic import ValidationError

from src.cache.store import CacheStore
from src.transforms.countries import (
    CountryDetails,
    CountrySummary,
    RawCountry,
    dump_countries,
    load_countries,
    normalize_country,
    transform_countries,
)
from src.utils.logging import get_logger


logger = get_logger(component="country_cache")

ALL_COUNTRIES_CACHE_KEY = "all_countries_data_v1"
DEFAULT_RETRY_DELAY_SECONDS = 5.0
REFRESH_MESSAGE = "Country cache refreshed successfully."


class CountryServiceError(Exception):
    pass


class UpstreamUnavailableError(CountryServiceError):
    def __init__(self, message: str = "Failed to update country data from external source.") -> None:
        super().__init__(message)


class NoDataAvailableError(CountryServiceError):
    def __init__(self, message: str = "No country data available.") -> None:
        super().__init__(message)


class CountryNotFoundError(CountryServiceError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Country with name "{name}" not found')
        self.name = name


class CountryFetcher(Protocol):
    async def fetch_all(self) -> list[RawCountry]: ...


class CountryCacheService:
    """
    Cache-aside owner of the single "all countries" snapshot.

    - One key (ALL_COUNTRIES_CACHE_KEY) holding the normalized, name-sorted list
    - Reads are served from the store while the snapshot is non-empty
    - Loads make at most two upstream calls (initial + one retry after a fixed delay)
    - An empty upstream result deletes the snapshot; a failed load leaves it untouched
    - No lock: concurrent loads race and the last write wins
    """

    def __init__(
        self,
        fetcher: CountryFetcher,
        store: CacheStore,
        *,
        fallback_flag_url: str,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._fallback_flag_url = fallback_flag_url
        self._retry_delay = float(retry_delay_seconds)
        self._sleep = sleep

        self._prewarm_state = "pending"
        self._last_error: str | None = None
        self._last_refreshed_at: datetime | None = None
        self._last_loaded_count = 0

    def normalize(self, raw: RawCountry) -> CountryDetails:
        return normalize_country(raw, fallback_flag_url=self._fallback_flag_url)

    async def load_and_cache(self, is_retry_attempt: bool = False) -> list[CountryDetails]:
        attempts = 1 if is_retry_attempt else 2
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info("countries_load_retry_scheduled", delay_seconds=self._retry_delay)
                await self._sleep(self._retry_delay)

            logger.info("countries_load_started", attempt=attempt, is_retry=is_retry_attempt or attempt > 1)
            try:
                raw_countries = await self._fetcher.fetch_all()
                return await self._store_snapshot(raw_countries)
            except Exception as e:
                last_error = e
                self._last_error = str(e)
                logger.error("countries_load_failed", attempt=attempt, error=str(e))

        raise UpstreamUnavailableError() from last_error

    async def _store_snapshot(self, raw_countries: list[RawCountry]) -> list[CountryDetails]:
        if not raw_countries:
            logger.warning("countries_load_empty")
            await self._store.delete(ALL_COUNTRIES_CACHE_KEY)
            self._mark_loaded(0)
            return []

        countries = transform_countries(raw_countries, fallback_flag_url=self._fallback_flag_url)
        await self._store.set(ALL_COUNTRIES_CACHE_KEY, dump_countries(countries))
        self._mark_loaded(len(countries))
        logger.info("countries_cached", count=len(countries))
        return countries

    def _mark_loaded(self, count: int) -> None:
        self._last_error = None
        self._last_refreshed_at = datetime.now(timezone.utc)
        self._last_loaded_count = count

    async def _read_snapshot(self) -> list[CountryDetails]:
        payload = await self._store.get(ALL_COUNTRIES_CACHE_KEY)
        if payload is None:
            return []
        try:
            countries = load_countries(payload)
        except ValidationError:
            logger.warning("cached_snapshot_invalid", key=ALL_COUNTRIES_CACHE_KEY)
            return []
        return countries or []

    async def get_or_fetch(self) -> list[CountryDetails]:
        cached = await self._read_snapshot()
        if cached:
            logger.debug("countries_cache_hit", count=len(cached))
            return cached
        logger.info("countries_cache_miss")
        return await self.load_and_cache(False)

    async def list_all(self) -> list[CountrySummary]:
        countries = await self.get_or_fetch()
        if not countries:
            logger.warning("list_all_no_data")
            raise NoDataAvailableError()
        return [c.summary() for c in countries]

    async def get_by_name(self, name: str) -> CountryDetails:
        countries = await self.get_or_fetch()
        wanted = name.lower()
        for c in countries:
            if c.name.lower() == wanted:
                return c
        logger.warning("country_not_found", name=name)
        raise CountryNotFoundError(name)

    async def refresh(self) -> dict[str, Any]:
        logger.info("countries_refresh_requested")
        countries = await self.load_and_cache(False)
        return {"message": REFRESH_MESSAGE, "count": len(countries)}

    async def prewarm(self) -> None:
        """Startup load. Failures are logged and kept in status(); never raised."""
        self._prewarm_state = "running"
        logger.info("cache_prewarm_started")
        try:
            countries = await self.load_and_cache(False)
        except Exception as e:
            self._prewarm_state = "failed"
            cause = e.__cause__
            logger.error("cache_prewarm_failed", error=str(e), cause=str(cause) if cause is not None else None)
            return
        self._prewarm_state = "succeeded"
        logger.info("cache_prewarm_succeeded", count=len(countries))

    def start_prewarm(self) -> asyncio.Task[None]:
        return asyncio.create_task(self.prewarm(), name="countries-cache-prewarm")

    def status(self) -> dict[str, Any]:
        return {
            "prewarm": self._prewarm_state,
            "last_loaded_count": self._last_loaded_count,
            "last_refreshed_at_utc": self._last_refreshed_at.isoformat() if self._last_refreshed_at else None,
            "last_error": self._last_error,
        }
