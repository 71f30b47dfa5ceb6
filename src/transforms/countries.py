from __future__ import annotations

import unicodedata
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field


NO_CAPITAL = "N/A"


class RawCountryName(BaseModel):
    model_config = ConfigDict(extra="ignore")

    common: str
    official: str | None = None


class RawCountryFlags(BaseModel):
    model_config = ConfigDict(extra="ignore")

    svg: str | None = None
    png: str | None = None


class RawCountry(BaseModel):
    """One element of the upstream /all payload (only the fields we read)."""

    model_config = ConfigDict(extra="ignore")

    name: RawCountryName
    population: int = Field(ge=0)
    capital: list[str] | None = None
    flags: RawCountryFlags = Field(default_factory=RawCountryFlags)


class CountrySummary(BaseModel):
    name: str
    flag: str


class CountryDetails(BaseModel):
    name: str
    flag: str
    population: int = Field(ge=0)
    capital: str

    def summary(self) -> CountrySummary:
        return CountrySummary(name=self.name, flag=self.flag)


def normalize_country(raw: RawCountry, *, fallback_flag_url: str) -> CountryDetails:
    """
    RAW -> cached entity
    - flag: svg, else png, else fallback
    - capital: first element, else "N/A"
    """
    flag = raw.flags.svg or raw.flags.png or fallback_flag_url
    capital = raw.capital[0] if raw.capital and raw.capital[0] else NO_CAPITAL
    return CountryDetails(
        name=raw.name.common,
        flag=flag,
        population=raw.population,
        capital=capital,
    )


def collation_key(name: str) -> tuple[str, str]:
    # Accent/case folded text first, raw name breaks ties so the order is total.
    decomposed = unicodedata.normalize("NFKD", name)
    base = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return (base.casefold(), name)


def sort_countries(countries: Iterable[CountryDetails]) -> list[CountryDetails]:
    return sorted(countries, key=lambda c: collation_key(c.name))


def transform_countries(raw_countries: Iterable[RawCountry], *, fallback_flag_url: str) -> list[CountryDetails]:
    """Normalize every record and sort by name. Duplicates pass through."""
    return sort_countries(normalize_country(r, fallback_flag_url=fallback_flag_url) for r in raw_countries)


def dump_countries(countries: Iterable[CountryDetails]) -> list[dict[str, Any]]:
    return [c.model_dump() for c in countries]


def load_countries(payload: Any) -> list[CountryDetails] | None:
    """Cached JSON payload -> entities. None when the payload is not a list."""
    if not isinstance(payload, list):
        return None
    return [CountryDetails.model_validate(item) for item in payload]
