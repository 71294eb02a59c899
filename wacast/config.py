"""
wacast.config

Environment + YAML configuration.

- .env is loaded once at import (python-dotenv), like the rest of the stack.
- Shards come from config/shards.yaml (override with WACAST_SHARDS_FILE).
  ${VARS} inside the YAML are expanded from the environment, so connection
  strings stay out of the repo.
- Economic parameters come from env only and fail fast when incomplete.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import requests
import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .models import EconomicParameters, RateDenominator

load_dotenv()

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SHARDS_FILE = ROOT_DIR / "config" / "shards.yaml"
DEFAULT_TEMPLATES_FILE = ROOT_DIR / "config" / "templates.yaml"


# -----------------------------
# Env helpers
# -----------------------------
def _env_int(name: str, default: int) -> int:
    try:
        v = int(os.environ.get(name, str(default)) or str(default))
        return v
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        v = float(os.environ.get(name, str(default)) or str(default))
        return v
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_list(name: str, default: Iterable[str]) -> List[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


# -----------------------------
# Send loop knobs
# -----------------------------
# Operator speed presets (ms between sends).
PACE_PRESETS: Dict[str, int] = {
    "slow": 2000,
    "normal": 1000,
    "fast": 500,
    "turbo": 200,
}

LIVE_DEFAULT = _env_bool("WACAST_LIVE", True)
PAUSE_POLL_MS = _env_int("WACAST_PAUSE_POLL_MS", 100)


def resolve_pace(value: Union[int, float, str, None]) -> int:
    """Pace in ms from a number, numeric string or preset name."""
    if value is None or value == "":
        value = os.environ.get("WACAST_DEFAULT_PACE", "normal")
    if isinstance(value, (int, float)):
        ms = int(value)
    else:
        key = str(value).strip().lower()
        if key in PACE_PRESETS:
            ms = PACE_PRESETS[key]
        else:
            try:
                ms = int(float(key))
            except ValueError:
                raise ConfigError(
                    f"Unknown pace {value!r}; use milliseconds or one of {', '.join(PACE_PRESETS)}"
                ) from None
    if ms < 0:
        raise ConfigError(f"Pace must be >= 0 ms, got {ms}")
    return ms


# -----------------------------
# YAML loading
# -----------------------------
def _expand_env(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    if isinstance(obj, str):
        return os.path.expandvars(obj)
    return obj


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{p} must contain a mapping at the top level")
    return _expand_env(data)


# -----------------------------
# Shards
# -----------------------------
@dataclass
class ShardConfig:
    """
    One recipient store.

    `table` is the collection/table holding recipient rows; `id_column` is
    the column matched against the recipient id (a phone number).
    `columns` maps logical field names (status, channel, paid_at, ...) to the
    shard's physical column names where they differ.
    """

    key: str
    url: str
    table: str
    name: str = ""
    description: str = ""
    id_column: str = "recipient_id"
    timestamp_unit: str = "seconds"
    columns: Dict[str, str] = field(default_factory=dict)

    def col(self, logical: str) -> str:
        return self.columns.get(logical, logical)


def _shard_from_dict(key: str, raw: Dict[str, Any]) -> ShardConfig:
    url = (raw.get("url") or "").strip()
    table = (raw.get("table") or raw.get("collection") or "").strip()
    if not url or "${" in url:
        raise ConfigError(f"Shard {key!r} has no connection url (check the env var it references)")
    if not table:
        raise ConfigError(f"Shard {key!r} has no table")
    return ShardConfig(
        key=key,
        url=url,
        table=table,
        name=raw.get("name") or key,
        description=raw.get("description") or "",
        id_column=raw.get("id_column") or "recipient_id",
        timestamp_unit=raw.get("timestamp_unit") or "seconds",
        columns=dict(raw.get("columns") or {}),
    )


def load_shards(path: Optional[Union[str, Path]] = None) -> Dict[str, ShardConfig]:
    """
    Load the shard registry.

    Shards whose url is unset are skipped with a warning rather than failing
    the whole registry; asking for one of them later is a ConfigError.
    """
    p = path or os.environ.get("WACAST_SHARDS_FILE") or DEFAULT_SHARDS_FILE
    data = load_yaml(p)
    shards: Dict[str, ShardConfig] = {}
    for key, raw in (data.get("shards") or {}).items():
        try:
            shards[key] = _shard_from_dict(key, raw or {})
        except ConfigError as e:
            logger.warning("Skipping shard %s: %s", key, e)
    return shards


# -----------------------------
# Economics
# -----------------------------
_ECON_ENV = {
    "revenue_per_purchase": "CAMPAIGN_REVENUE_PER_PURCHASE",
    "revenue_per_upsell": "CAMPAIGN_REVENUE_PER_UPSELL",
    "cost_per_message": "CAMPAIGN_COST_PER_MESSAGE",
    "fx_rate": "CAMPAIGN_FX_RATE",
}

FX_RATE_URL = os.getenv("CAMPAIGN_FX_RATE_URL", "https://api.exchangerate-api.com/v4/latest/USD")
FX_CURRENCY = os.getenv("CAMPAIGN_FX_CURRENCY", "COP")


def fetch_fx_rate(url: str = FX_RATE_URL, currency: str = FX_CURRENCY, timeout: float = 10.0) -> float:
    """Fetch a live USD -> currency rate. Raises on any failure."""
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    rate = (resp.json().get("rates") or {}).get(currency)
    if rate is None:
        raise ValueError(f"{currency} missing from FX response")
    return float(rate)


def _resolve_fx(raw: str) -> float:
    if raw.strip().lower() != "auto":
        return float(raw)
    fallback = os.environ.get("CAMPAIGN_FX_RATE_FALLBACK")
    try:
        return fetch_fx_rate()
    except (requests.RequestException, ValueError) as e:
        if not fallback:
            raise ConfigError(f"Live FX rate lookup failed and CAMPAIGN_FX_RATE_FALLBACK is unset: {e}") from e
        logger.warning("Live FX rate lookup failed (%s); using fallback %s", e, fallback)
        return float(fallback)


def load_economic_parameters() -> EconomicParameters:
    missing = [env for env in _ECON_ENV.values() if not (os.environ.get(env) or "").strip()]
    if missing:
        raise ConfigError("Missing economic parameters: " + ", ".join(missing))

    values: Dict[str, float] = {}
    for attr, env in _ECON_ENV.items():
        raw = os.environ[env].strip()
        try:
            values[attr] = _resolve_fx(raw) if attr == "fx_rate" else float(raw)
        except ValueError:
            raise ConfigError(f"{env} is not a number: {raw!r}") from None
    return EconomicParameters(**values)


# -----------------------------
# Analytics
# -----------------------------
@dataclass(frozen=True)
class AnalyticsSettings:
    responded_statuses: tuple = ("responded", "responded-bulk")
    paid_status: str = "paid"
    denominator: RateDenominator = RateDenominator.ALL_SENT


def load_analytics_settings() -> AnalyticsSettings:
    raw_denom = (os.environ.get("CAMPAIGN_RATE_DENOMINATOR") or RateDenominator.ALL_SENT.value).strip().lower()
    try:
        denom = RateDenominator(raw_denom)
    except ValueError:
        raise ConfigError(
            f"CAMPAIGN_RATE_DENOMINATOR must be one of {[d.value for d in RateDenominator]}"
        ) from None
    return AnalyticsSettings(
        responded_statuses=tuple(_env_list("CAMPAIGN_RESPONDED_STATUSES", AnalyticsSettings.responded_statuses)),
        paid_status=(os.environ.get("CAMPAIGN_PAID_STATUS") or "paid").strip(),
        denominator=denom,
    )
