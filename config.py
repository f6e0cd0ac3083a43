"""
IcsMap runtime settings.
Read once from ICSMAP_* environment variables by the entry point and passed to constructors.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

BASE_DIR = Path(__file__).resolve().parent
TRUTHY = ("1", "true", "yes", "on")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _flag(env: Mapping[str, str], name: str) -> bool:
    return str(env.get(name, "")).strip().lower() in TRUTHY


def _number(env: Mapping[str, str], name: str, default, cast=int):
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logging.getLogger(__name__).warning("ignoring invalid %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class Settings:
    db_path: Path = BASE_DIR / "data" / "icsmap.db"
    log_level: str = "INFO"
    api_key: str = ""
    debug: bool = False
    ip_cache_size: int = 4096
    offline_threshold_hours: float = 1.0
    check_batch_size: int = 10
    check_interval_seconds: int = 300
    alert_retention_days: int = 90
    staleness_minutes: int = 15
    max_path_hops: int = 5

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        db_path = str(env.get("ICSMAP_DB_PATH", "")).strip()
        return cls(
            db_path=Path(db_path) if db_path else cls.db_path,
            log_level=str(env.get("ICSMAP_LOG_LEVEL", "INFO")).strip().upper() or "INFO",
            api_key=str(env.get("ICSMAP_API_KEY", "")).strip(),
            debug=_flag(env, "ICSMAP_DEBUG"),
            ip_cache_size=max(1, _number(env, "ICSMAP_IP_CACHE_SIZE", 4096)),
            offline_threshold_hours=_number(env, "ICSMAP_OFFLINE_THRESHOLD_HOURS", 1.0, float),
            check_batch_size=max(1, _number(env, "ICSMAP_CHECK_BATCH_SIZE", 10)),
            check_interval_seconds=max(5, _number(env, "ICSMAP_CHECK_INTERVAL_SECONDS", 300)),
            alert_retention_days=max(1, _number(env, "ICSMAP_ALERT_RETENTION_DAYS", 90)),
            staleness_minutes=max(1, _number(env, "ICSMAP_STALENESS_MINUTES", 15)),
            max_path_hops=max(1, _number(env, "ICSMAP_MAX_PATH_HOPS", 5)),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
