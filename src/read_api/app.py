from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.cache.country_cache import CountryCacheService, CountryNotFoundError, CountryServiceError
from src.cache.store import create_cache_store
from src.collector.countries_client import CountriesClient
from src.transforms.countries import CountryDetails, CountrySummary
from src.utils.config import AppConfig, load_app_config
from src.utils.logging import bind_request_context, clear_request_context, get_logger, setup_logging


logger = get_logger(component="read_api")


def get_country_service(request: Request) -> CountryCacheService:
    return request.app.state.country_service


router = APIRouter()


@router.get("/countries", response_model=list[CountrySummary], tags=["Countries"])
async def list_countries(service: CountryCacheService = Depends(get_country_service)) -> list[CountrySummary]:
    """All countries (name + flag URL), sorted alphabetically by name."""
    return await service.list_all()


@router.get("/countries/{name}", response_model=CountryDetails, tags=["Countries"])
async def get_country(name: str, service: CountryCacheService = Depends(get_country_service)) -> CountryDetails:
    """Details for one country; `name` is the common name, matched case-insensitively."""
    return await service.get_by_name(name)


@router.post("/countries/cache/refresh", status_code=200, tags=["Countries"])
async def refresh_countries_cache(service: CountryCacheService = Depends(get_country_service)) -> dict[str, Any]:
    """Reload the country snapshot from the upstream source."""
    return await service.refresh()


@router.get("/health", tags=["Ops"])
async def health(service: CountryCacheService = Depends(get_country_service)) -> dict[str, Any]:
    return {"ok": True, "cache": service.status()}


async def _country_service_error_handler(request: Request, exc: CountryServiceError) -> JSONResponse:
    status_code = 404 if isinstance(exc, CountryNotFoundError) else 500
    logger.warning("request_failed", path=request.url.path, status_code=status_code, error=str(exc))
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("request_unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _build_service(config: AppConfig) -> tuple[CountryCacheService, CountriesClient]:
    client = CountriesClient(url=config.upstream_url, timeout_seconds=config.upstream_timeout_seconds)
    store = create_cache_store(config)
    service = CountryCacheService(
        client,
        store,
        fallback_flag_url=config.fallback_flag_url,
        retry_delay_seconds=config.retry_delay_seconds,
    )
    return service, client


def create_app(config: AppConfig | None = None, *, service: CountryCacheService | None = None) -> FastAPI:
    """
    Build the HTTP app.

    Without an injected `service`, the lifespan wires the upstream client, cache store and
    cache service. The startup pre-warm runs as a background task so readiness is never
    blocked by the upstream.
    """
    cfg = config or load_app_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client: CountriesClient | None = None
        if app.state.country_service is None:
            setup_logging()
            app.state.country_service, client = _build_service(cfg)

        prewarm = app.state.country_service.start_prewarm()
        logger.info("read_api_started", prefix=f"/{cfg.api_prefix}", cors_origin=cfg.cors_origin)
        try:
            yield
        finally:
            if not prewarm.done():
                prewarm.cancel()
                try:
                    await prewarm
                except asyncio.CancelledError:
                    pass
            if client is not None:
                await client.aclose()
                # Owned by this lifespan; the next startup builds a fresh one.
                app.state.country_service = None
            logger.info("read_api_stopped")

    swagger = cfg.swagger_path.strip("/") or "swagger"
    app = FastAPI(
        title="Flag Explorer API",
        description="API for retrieving country information including flags, population, and capitals.",
        version="1.0",
        docs_url=f"/{swagger}",
        lifespan=lifespan,
    )
    app.state.country_service = service
    app.state.config = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.cors_origin],
        allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        bind_request_context(request_id=request_id, method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["x-request-id"] = request_id
        return response

    app.add_exception_handler(CountryServiceError, _country_service_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    prefix = f"/{cfg.api_prefix}" if cfg.api_prefix else ""
    app.include_router(router, prefix=prefix)
    return app


app = create_app()
