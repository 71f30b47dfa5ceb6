from __future__ import annotations

import asyncio
from typing import Any

from fastapi.testclient import TestClient

from src.cache.country_cache import (
    ALL_COUNTRIES_CACHE_KEY,
    CountryCacheService,
    CountryNotFoundError,
    NoDataAvailableError,
    UpstreamUnavailableError,
)
from src.cache.store import MemoryCacheStore
from src.read_api.app import create_app
from src.transforms.countries import CountryDetails, CountrySummary
from src.utils.config import AppConfig


CACHED = [
    {"name": "Alpha", "flag": "a.png", "population": 3, "capital": "N/A"},
    {"name": "South Africa", "flag": "za.svg", "population": 60000000, "capital": "Pretoria"},
]


class _StubService:
    """Stands in for CountryCacheService at the HTTP boundary."""

    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[str] = []

    def _raise(self) -> None:
        if self.error is not None:
            raise self.error

    async def list_all(self) -> list[CountrySummary]:
        self.calls.append("list_all")
        self._raise()
        return [CountryDetails(**c).summary() for c in CACHED]

    async def get_by_name(self, name: str) -> CountryDetails:
        self.calls.append(f"get_by_name:{name}")
        self._raise()
        for c in CACHED:
            if c["name"].lower() == name.lower():
                return CountryDetails(**c)
        raise CountryNotFoundError(name)

    async def refresh(self) -> dict[str, Any]:
        self.calls.append("refresh")
        self._raise()
        return {"message": "Country cache refreshed successfully.", "count": len(CACHED)}

    def status(self) -> dict[str, Any]:
        return {"prewarm": "succeeded", "last_loaded_count": 2, "last_refreshed_at_utc": None, "last_error": None}


def _client(service: Any, **cfg: Any) -> TestClient:
    app = create_app(AppConfig(**cfg), service=service)
    return TestClient(app, raise_server_exceptions=False)


def test_list_countries_returns_name_and_flag() -> None:
    res = _client(_StubService()).get("/api/countries")
    assert res.status_code == 200
    assert res.json() == [{"name": "Alpha", "flag": "a.png"}, {"name": "South Africa", "flag": "za.svg"}]


def test_list_countries_no_data_is_500() -> None:
    res = _client(_StubService(error=NoDataAvailableError())).get("/api/countries")
    assert res.status_code == 500
    assert res.json() == {"detail": "No country data available."}


def test_get_country_by_name_case_insensitive() -> None:
    client = _client(_StubService())
    res = client.get("/api/countries/south%20africa")
    assert res.status_code == 200
    assert res.json() == {"name": "South Africa", "flag": "za.svg", "population": 60000000, "capital": "Pretoria"}


def test_get_country_not_found_is_404_with_requested_name() -> None:
    res = _client(_StubService()).get("/api/countries/Atlantis")
    assert res.status_code == 404
    assert res.json() == {"detail": 'Country with name "Atlantis" not found'}


def test_get_country_upstream_unavailable_is_500() -> None:
    res = _client(_StubService(error=UpstreamUnavailableError())).get("/api/countries/Alpha")
    assert res.status_code == 500
    assert res.json()["detail"] == "Failed to update country data from external source."


def test_unexpected_error_is_500_without_internal_details() -> None:
    res = _client(_StubService(error=RuntimeError("secret stack detail"))).get("/api/countries/Alpha")
    assert res.status_code == 500
    assert res.json() == {"detail": "Internal server error"}


def test_refresh_returns_message_and_count() -> None:
    service = _StubService()
    res = _client(service).post("/api/countries/cache/refresh")
    assert res.status_code == 200
    assert res.json() == {"message": "Country cache refreshed successfully.", "count": 2}
    assert service.calls == ["refresh"]


def test_refresh_upstream_unavailable_is_500() -> None:
    res = _client(_StubService(error=UpstreamUnavailableError())).post("/api/countries/cache/refresh")
    assert res.status_code == 500


def test_health_reports_cache_status() -> None:
    res = _client(_StubService()).get("/api/health")
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.json()["cache"]["last_loaded_count"] == 2


def test_custom_prefix_and_swagger_path() -> None:
    client = _client(_StubService(), api_prefix="v2", swagger_path="docs-here")
    assert client.get("/v2/countries").status_code == 200
    assert client.get("/api/countries").status_code == 404
    assert client.get("/docs-here").status_code == 200


def test_cors_allows_configured_origin_only() -> None:
    client = _client(_StubService(), cors_origin="http://frontend.test")
    ok = client.get("/api/countries", headers={"Origin": "http://frontend.test"})
    assert ok.headers.get("access-control-allow-origin") == "http://frontend.test"
    assert ok.headers.get("access-control-allow-credentials") == "true"

    other = client.get("/api/countries", headers={"Origin": "http://evil.test"})
    assert "access-control-allow-origin" not in other.headers


def test_lifespan_prewarms_injected_service() -> None:
    class _Fetcher:
        calls = 0

        async def fetch_all(self):
            self.calls += 1
            return []

    async def _no_sleep(_s: float) -> None:
        return None

    store = MemoryCacheStore()
    fetcher = _Fetcher()
    service = CountryCacheService(fetcher, store, fallback_flag_url="x", sleep=_no_sleep)
    app = create_app(AppConfig(), service=service)

    with TestClient(app) as client:
        # Readiness is not tied to the pre-warm outcome.
        res = client.get("/api/health")
        assert res.status_code == 200

    assert fetcher.calls >= 1
    assert service.status()["prewarm"] in ("succeeded", "running")


def test_lifespan_builds_fresh_service_on_each_startup(monkeypatch) -> None:
    import src.read_api.app as app_mod

    class _Client:
        closed = False

        async def aclose(self) -> None:
            self.closed = True

    class _Service(_StubService):
        def start_prewarm(self) -> asyncio.Task:
            async def _noop() -> None:
                return None

            return asyncio.get_running_loop().create_task(_noop())

    built: list[tuple[_Service, _Client]] = []

    def _fake_build(_cfg: AppConfig):
        pair = (_Service(), _Client())
        built.append(pair)
        return pair

    monkeypatch.setattr(app_mod, "_build_service", _fake_build)
    monkeypatch.setattr(app_mod, "setup_logging", lambda: None)
    app = create_app(AppConfig())

    with TestClient(app) as client:
        assert client.get("/api/countries").status_code == 200
    assert app.state.country_service is None

    with TestClient(app) as client:
        assert client.get("/api/countries").status_code == 200
    assert app.state.country_service is None

    assert len(built) == 2
    assert built[0][0] is not built[1][0]
    assert built[0][1].closed and built[1][1].closed
    assert built[0][0].calls == ["list_all"]
    assert built[1][0].calls == ["list_all"]


def test_real_service_behind_app_serves_cached_snapshot() -> None:
    class _Fetcher:
        async def fetch_all(self):
            raise AssertionError("cache should be used")

    store = MemoryCacheStore()
    asyncio.run(store.set(ALL_COUNTRIES_CACHE_KEY, CACHED))
    service = CountryCacheService(_Fetcher(), store, fallback_flag_url="x")

    client = _client(service)
    res = client.get("/api/countries/ALPHA")
    assert res.status_code == 200
    assert res.json() == CACHED[0]


def test_request_id_is_echoed_or_generated() -> None:
    client = _client(_StubService())
    given = client.get("/api/countries", headers={"X-Request-ID": "abc123"})
    assert given.headers["x-request-id"] == "abc123"

    generated = client.get("/api/countries")
    assert len(generated.headers["x-request-id"]) == 32
