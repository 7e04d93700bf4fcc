# common/config_loader.py
from __future__ import annotations

import hashlib
import logging
import os
import pathlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml
from dotenv import load_dotenv

_log = logging.getLogger("sales-ledger")

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./sales_ledger.db"
ORACLE_STRATEGIES = ("single", "staged")


def load_env_files(candidates: Iterable[str] = (".env.local", "env.local", ".env")) -> None:
    """
    Load env files from both CWD and project root (relative to this file),
    without overriding values already provided by the platform.
    """
    here = pathlib.Path(__file__).resolve()
    roots = {
        pathlib.Path.cwd(),
        here.parent.parent,
    }
    for fname in candidates:
        for root in roots:
            p = root / fname
            if p.exists():
                load_dotenv(p, override=False)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML from path, CONFIG_PATH or ./config.yaml, with safe defaults."""
    config_path = Path(path or os.getenv("CONFIG_PATH", "config.yaml"))
    if not config_path.exists():
        _log.warning("Config file not found at %s. Using built-in defaults.", config_path)
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        _log.error("Failed to parse %s: %s. Using built-in defaults.", config_path, e)
        return {}
    if not isinstance(data, dict):
        _log.error("Config %s must be a mapping, got %s. Using built-in defaults.", config_path, type(data).__name__)
        return {}
    return data


def cfg_get(d: Dict[str, Any], path: str, default=None):
    """Safely fetch a nested key via dotted path, e.g. cfg_get(cfg, 'openai.model')."""
    cur = d
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def mask_key(key: Optional[str]) -> str:
    if not key:
        return "<none>"
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"sha256:{digest[:8]}"


def parse_salespeople(raw: Any) -> Dict[str, str]:
    """
    Accepts either a mapping {sender: name} (YAML) or the env form
    "5511999990000:Gabriel,5511988880000:Miriam".
    """
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return {str(k).strip(): str(v).strip() for k, v in raw.items() if str(k).strip() and v}
    out: Dict[str, str] = {}
    for chunk in str(raw).split(","):
        if ":" not in chunk:
            continue
        key, name = chunk.split(":", 1)
        if key.strip() and name.strip():
            out[key.strip()] = name.strip()
    return out


# ---------- typed settings ----------
@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    sql_echo: bool = False
    db_sslmode: str = "disable"

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    oracle_strategy: str = "single"
    oracle_timeout_seconds: float = 20.0

    timezone: str = "UTC"
    currency_symbol: str = "$"
    log_level: str = "INFO"

    draft_ttl_minutes: int = 15
    confirm_ttl_minutes: int = 15
    update_ttl_minutes: int = 15
    delete_ttl_minutes: int = 5
    list_default_days: int = 30

    similarity_threshold: float = 0.8
    max_similar: int = 3

    sale_number_max_attempts: int = 8
    sale_number_backoff_seconds: float = 0.05

    state_cache_size: int = 512
    state_cache_ttl_seconds: float = 60.0

    default_salesperson: str = "Unknown"
    salespeople: Dict[str, str] = field(default_factory=dict)

    def salesperson_for(self, partition_key: str) -> str:
        return self.salespeople.get(partition_key, self.default_salesperson)


def _pick(env: Mapping[str, str], env_var: str, cfg: Dict[str, Any], path: str, default: Any) -> Any:
    if env.get(env_var) not in (None, ""):
        return env[env_var]
    return cfg_get(cfg, path, default)


def _as_int(name: str, raw: Any) -> int:
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _as_float(name: str, raw: Any) -> float:
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _validate(s: Settings) -> None:
    if s.oracle_strategy not in ORACLE_STRATEGIES:
        raise ValueError(f"ORACLE_STRATEGY must be one of {ORACLE_STRATEGIES}, got {s.oracle_strategy!r}")
    if not 0.0 < s.similarity_threshold < 1.0:
        raise ValueError(f"SIMILARITY_THRESHOLD must be between 0 and 1, got {s.similarity_threshold}")
    if s.max_similar < 1:
        raise ValueError(f"MAX_SIMILAR must be >= 1, got {s.max_similar}")
    if s.sale_number_max_attempts < 1:
        raise ValueError(f"SALE_NUMBER_MAX_ATTEMPTS must be >= 1, got {s.sale_number_max_attempts}")
    for name, minutes in (
        ("DRAFT_TTL_MINUTES", s.draft_ttl_minutes),
        ("CONFIRM_TTL_MINUTES", s.confirm_ttl_minutes),
        ("UPDATE_TTL_MINUTES", s.update_ttl_minutes),
        ("DELETE_TTL_MINUTES", s.delete_ttl_minutes),
        ("LIST_DEFAULT_DAYS", s.list_default_days),
    ):
        if minutes < 1:
            raise ValueError(f"{name} must be >= 1, got {minutes}")
    if s.state_cache_size < 0:
        raise ValueError(f"STATE_CACHE_SIZE must be >= 0, got {s.state_cache_size}")


def load_settings(
    cfg: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build Settings from YAML config + environment (environment wins).
    Pass cfg/env explicitly in tests; by default reads config.yaml and os.environ.
    """
    if env is None:
        load_env_files()
        env = os.environ
    if cfg is None:
        cfg = load_config()

    settings = Settings(
        database_url=str(_pick(env, "DATABASE_URL", cfg, "database.url", DEFAULT_DATABASE_URL)),
        sql_echo=_as_bool(_pick(env, "SQL_ECHO", cfg, "database.echo", False)),
        db_sslmode=str(_pick(env, "DB_SSLMODE", cfg, "database.sslmode", "disable")).lower(),
        openai_api_key=_pick(env, "OPENAI_API_KEY", cfg, "openai.api_key", None),
        openai_model=str(_pick(env, "OPENAI_MODEL", cfg, "openai.model", "gpt-4o-mini")),
        oracle_strategy=str(_pick(env, "ORACLE_STRATEGY", cfg, "oracle.strategy", "single")).lower(),
        oracle_timeout_seconds=_as_float("ORACLE_TIMEOUT_SECONDS", _pick(env, "ORACLE_TIMEOUT_SECONDS", cfg, "oracle.timeout_seconds", 20.0)),
        timezone=str(_pick(env, "BUSINESS_TZ", cfg, "business.timezone", "UTC")),
        currency_symbol=str(_pick(env, "CURRENCY_SYMBOL", cfg, "business.currency_symbol", "$")),
        log_level=str(_pick(env, "LOG_LEVEL", cfg, "logging.level", "INFO")).upper(),
        draft_ttl_minutes=_as_int("DRAFT_TTL_MINUTES", _pick(env, "DRAFT_TTL_MINUTES", cfg, "dialogue.draft_ttl_minutes", 15)),
        confirm_ttl_minutes=_as_int("CONFIRM_TTL_MINUTES", _pick(env, "CONFIRM_TTL_MINUTES", cfg, "dialogue.confirm_ttl_minutes", 15)),
        update_ttl_minutes=_as_int("UPDATE_TTL_MINUTES", _pick(env, "UPDATE_TTL_MINUTES", cfg, "dialogue.update_ttl_minutes", 15)),
        delete_ttl_minutes=_as_int("DELETE_TTL_MINUTES", _pick(env, "DELETE_TTL_MINUTES", cfg, "dialogue.delete_ttl_minutes", 5)),
        list_default_days=_as_int("LIST_DEFAULT_DAYS", _pick(env, "LIST_DEFAULT_DAYS", cfg, "dialogue.list_default_days", 30)),
        similarity_threshold=_as_float("SIMILARITY_THRESHOLD", _pick(env, "SIMILARITY_THRESHOLD", cfg, "customers.similarity_threshold", 0.8)),
        max_similar=_as_int("MAX_SIMILAR", _pick(env, "MAX_SIMILAR", cfg, "customers.max_similar", 3)),
        sale_number_max_attempts=_as_int("SALE_NUMBER_MAX_ATTEMPTS", _pick(env, "SALE_NUMBER_MAX_ATTEMPTS", cfg, "ledger.max_attempts", 8)),
        sale_number_backoff_seconds=_as_float("SALE_NUMBER_BACKOFF_SECONDS", _pick(env, "SALE_NUMBER_BACKOFF_SECONDS", cfg, "ledger.backoff_seconds", 0.05)),
        state_cache_size=_as_int("STATE_CACHE_SIZE", _pick(env, "STATE_CACHE_SIZE", cfg, "state_cache.size", 512)),
        state_cache_ttl_seconds=_as_float("STATE_CACHE_TTL_SECONDS", _pick(env, "STATE_CACHE_TTL_SECONDS", cfg, "state_cache.ttl_seconds", 60.0)),
        default_salesperson=str(_pick(env, "DEFAULT_SALESPERSON", cfg, "salespeople_default", "Unknown")),
        salespeople=parse_salespeople(_pick(env, "SALESPEOPLE", cfg, "salespeople", {})),
    )
    _validate(settings)
    _log.info(
        "Settings loaded: db=%s oracle=%s model=%s openai_key=%s tz=%s salespeople=%d",
        settings.database_url.split("@")[-1],
        settings.oracle_strategy,
        settings.openai_model,
        mask_key(settings.openai_api_key),
        settings.timezone,
        len(settings.salespeople),
    )
    return settings


__all__ = [
    "DEFAULT_DATABASE_URL",
    "Settings",
    "load_env_files",
    "load_config",
    "load_settings",
    "cfg_get",
    "mask_key",
    "parse_salespeople",
]
