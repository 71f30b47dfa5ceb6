from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import os
import yaml
from dotenv import load_dotenv


DEFAULT_UPSTREAM_URL = "https://restcountries.com/v3.1/all?fields=name,population,capital,flags"
DEFAULT_FALLBACK_FLAG_URL = "https://placehold.co/60x40?text=No+Flag"


@dataclass(frozen=True)
class AppConfig:
    upstream_url: str = DEFAULT_UPSTREAM_URL
    upstream_timeout_ms: int = 5000
    cache_store: str = "memory"
    cache_ttl_seconds: int = 3600
    max_cache_entries: int = 280
    redis_url: str = "redis://localhost:6379/0"
    fallback_flag_url: str = DEFAULT_FALLBACK_FLAG_URL
    retry_delay_seconds: float = 5.0
    port: int = 3000
    api_prefix: str = "api"
    cors_origin: str = "http://localhost:3001"
    swagger_path: str = "swagger"

    @property
    def upstream_timeout_seconds(self) -> float:
        return self.upstream_timeout_ms / 1000.0


# (env var, yaml section, yaml key, AppConfig field)
_KEYS: tuple[tuple[str, str, str, str], ...] = (
    ("REST_COUNTRIES_API_URL", "upstream", "url", "upstream_url"),
    ("REST_COUNTRIES_API_TIMEOUT", "upstream", "timeout_ms", "upstream_timeout_ms"),
    ("CACHE_STORE", "cache", "store", "cache_store"),
    ("CACHE_TTL_SECONDS", "cache", "ttl_seconds", "cache_ttl_seconds"),
    ("MAX_CACHE_SIZE", "cache", "max_entries", "max_cache_entries"),
    ("REDIS_URL", "cache", "redis_url", "redis_url"),
    ("NO_CFLAG_URL", "countries", "fallback_flag_url", "fallback_flag_url"),
    ("COUNTRIES_RETRY_DELAY_SECONDS", "countries", "retry_delay_seconds", "retry_delay_seconds"),
    ("PORT", "server", "port", "port"),
    ("API_GLOBAL_PREFIX", "server", "prefix", "api_prefix"),
    ("FRONTEND_URL", "server", "cors_origin", "cors_origin"),
    ("SWAGGER_PATH", "server", "swagger_path", "swagger_path"),
)

_INT_FIELDS = {"upstream_timeout_ms", "cache_ttl_seconds", "max_cache_entries", "port"}
_FLOAT_FIELDS = {"retry_delay_seconds"}
_NON_NEGATIVE = {"cache_ttl_seconds", "retry_delay_seconds"}
_POSITIVE = {"upstream_timeout_ms", "max_cache_entries"}


def _project_root() -> Path:
    # Resolve from this file: .../src/utils/config.py -> project root is 3 parents up.
    return Path(__file__).resolve().parents[2]


def _coerce(field: str, env_name: str, value: Any) -> Any:
    if field in _INT_FIELDS:
        try:
            out: Any = int(str(value).strip())
        except ValueError as e:
            raise ValueError(f"Invalid integer for {env_name}: {value!r}") from e
    elif field in _FLOAT_FIELDS:
        try:
            out = float(str(value).strip())
        except ValueError as e:
            raise ValueError(f"Invalid number for {env_name}: {value!r}") from e
    else:
        out = str(value).strip()

    if field in _NON_NEGATIVE and out < 0:
        raise ValueError(f"{env_name} must be >= 0, got {out}")
    if field in _POSITIVE and out <= 0:
        raise ValueError(f"{env_name} must be > 0, got {out}")
    return out


def load_app_config(path: str | None = None) -> AppConfig:
    """
    Load service config.

    Precedence (per key):
    - environment variable (a `.env` file is loaded first)
    - YAML file: explicit `path`, env `COUNTRIES_API_CONFIG`, or project default `config/app.yaml`
    - built-in default
    """
    load_dotenv()

    explicit = path or os.getenv("COUNTRIES_API_CONFIG")
    cfg_path = Path(explicit) if explicit else _project_root() / "config" / "app.yaml"
    if explicit and not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    cfg = load_yaml(cfg_path) if cfg_path.exists() else {}

    values: dict[str, Any] = {}
    for env_name, section, key, field in _KEYS:
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            raw = (cfg.get(section) or {}).get(key)
        if raw is None:
            continue
        values[field] = _coerce(field, env_name, raw)

    prefix = str(values.get("api_prefix", AppConfig.api_prefix)).strip("/")
    values["api_prefix"] = prefix
    return AppConfig(**values)


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    return yaml.safe_load(p.read_text(encoding="utf-8")) or {}
