from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError

from src.transforms.countries import RawCountry
from src.utils.logging import get_logger


logger = get_logger(component="countries_client")


class TransportError(Exception):
    """Single-attempt upstream failure (network, timeout, status or payload)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"External API Error: {message}")


class UpstreamTimeoutError(TransportError):
    pass


class UpstreamStatusError(TransportError):
    def __init__(self, status_code: int, body_text: str | None = None) -> None:
        super().__init__(f"Unexpected status code: {status_code}")
        self.status_code = status_code
        self.body_text = body_text


class UpstreamPayloadError(TransportError):
    pass


class CountriesClient:
    """
    REST Countries client
    - GET-only, exactly one request per fetch_all() call
    - no retries here (the cache service owns the retry policy)
    - Async httpx
    """

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = float(timeout_seconds)
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            max_redirects=5,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_all(self) -> list[RawCountry]:
        logger.info("countries_fetch_started", url=self._url)
        try:
            countries = await self._fetch_all()
        except TransportError as e:
            logger.error("countries_fetch_failed", url=self._url, error=str(e))
            raise
        logger.info("countries_fetch_succeeded", url=self._url, count=len(countries))
        return countries

    async def _fetch_all(self) -> list[RawCountry]:
        try:
            resp = await self._client.get(self._url)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Request timeout after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise TransportError(f"Request error: {e}") from e

        if not resp.is_success:
            body_text: str | None
            try:
                body_text = resp.text
            except Exception:
                body_text = None
            raise UpstreamStatusError(resp.status_code, body_text=body_text)

        try:
            data: Any = resp.json()
        except ValueError as e:
            raise UpstreamPayloadError("Failed to parse JSON") from e

        if not isinstance(data, list):
            raise UpstreamPayloadError(f"Expected a JSON array, got {type(data).__name__}")

        try:
            return [RawCountry.model_validate(item) for item in data]
        except ValidationError as e:
            raise UpstreamPayloadError(f"Unexpected record shape: {e.error_count()} validation error(s)") from e
