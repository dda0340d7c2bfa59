"""
Runtime settings for the mobile POS core.

Values come from the process environment, optionally seeded from a ``.env``
file. Blank values are treated as unset.

  POS_DB_PATH          SQLite DB path (default: pos_mobile.db)
  POS_API_URL          Remote authority base URL, e.g. http://192.168.1.20:3001
  POS_API_KEY          Credential sent as X-API-KEY / Bearer token
  POS_API_PREFIX       Path prefix of the authority routes (default: /api)
  POS_REQUEST_TIMEOUT  Seconds before a request counts as failed (default: 5)
  SYNC_INTERVAL        Seconds between push attempts (default: 10)
  SYNC_PULL_INTERVAL   Seconds between snapshot pulls (default: 60)
  SYNC_BATCH_SIZE      Max operations per push request (default: 25)
  SYNC_BACKOFF_BASE    First retry delay after a failed push (default: 2)
  SYNC_BACKOFF_MAX     Upper bound of the retry delay (default: 300)
  POS_OPERATOR_ID      Operator id stamped on sales
  POS_OPERATOR_NAME    Operator name stamped on sales (default: Mobile User)
  POS_LOG_LEVEL        Logging level name (default: INFO)
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_OPERATOR_NAME = "Mobile User"


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to the default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    clean = raw.strip()
    return clean if clean else default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name) or default)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring invalid %s; using %s", name, default)
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name) or default)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring invalid %s; using %s", name, default)
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = _env_string(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    db_path: str = "pos_mobile.db"
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    api_prefix: str = "/api"
    request_timeout: float = 5.0
    sync_interval: float = 10.0
    pull_interval: float = 60.0
    batch_size: int = 25
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    operator_id: Optional[str] = None
    operator_name: str = DEFAULT_OPERATOR_NAME
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 5000
    debug: bool = False


def load_settings(env_file: Optional[str] = None) -> Settings:
    load_dotenv(env_file)
    return Settings(
        db_path=_env_string("POS_DB_PATH", "pos_mobile.db"),
        api_url=_env_string("POS_API_URL"),
        api_key=_env_string("POS_API_KEY"),
        api_prefix=_env_string("POS_API_PREFIX", "/api"),
        request_timeout=_env_float("POS_REQUEST_TIMEOUT", 5.0),
        sync_interval=_env_float("SYNC_INTERVAL", 10.0),
        pull_interval=_env_float("SYNC_PULL_INTERVAL", 60.0),
        batch_size=max(1, _env_int("SYNC_BATCH_SIZE", 25)),
        backoff_base=_env_float("SYNC_BACKOFF_BASE", 2.0),
        backoff_max=_env_float("SYNC_BACKOFF_MAX", 300.0),
        operator_id=_env_string("POS_OPERATOR_ID"),
        operator_name=_env_string("POS_OPERATOR_NAME", DEFAULT_OPERATOR_NAME),
        log_level=(_env_string("POS_LOG_LEVEL", "INFO") or "INFO").upper(),
        host=_env_string("HOST", "127.0.0.1"),
        port=_env_int("PORT", 5000),
        debug=_env_flag("FLASK_DEBUG"),
    )


def log_level(name: Optional[str]) -> int:
    return getattr(logging, (name or "INFO").strip().upper(), logging.INFO)


def configure_logging(level_name: Optional[str] = None, prefix: str = "pos") -> None:
    logging.basicConfig(
        level=log_level(level_name),
        format=f"[{prefix}] %(asctime)s %(levelname)s %(message)s",
    )
