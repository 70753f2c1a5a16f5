import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SQLITE_PATH = str(Path(__file__).resolve().parents[1] / "data" / "pettapp.sqlite3")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    store_backend: str = "sqlite"
    mongodb_uri: str = "mongodb://localhost:27017/"
    mongodb_name: str = "pettapp-dev"
    mongodb_timeout_ms: int = 5000
    sqlite_path: str = DEFAULT_SQLITE_PATH
    default_radius_km: float = 10.0
    default_page_limit: int = 12
    max_page_limit: int = 100
    migration_lock_ttl_s: int = 3600
    skip_business_verification: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    trusted_hosts: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def load_settings() -> Settings:
    backend = os.getenv("STORE_BACKEND", "sqlite").strip().lower()
    if backend not in {"mongo", "sqlite"}:
        backend = "sqlite"
    max_page_limit = _env_int("MAX_PAGE_LIMIT", 100)
    default_page_limit = min(_env_int("DEFAULT_PAGE_LIMIT", 12), max_page_limit)
    return Settings(
        store_backend=backend,
        mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017/"),
        mongodb_name=os.getenv("MONGODB_NAME", "pettapp-dev"),
        mongodb_timeout_ms=_env_int("MONGODB_TIMEOUT_MS", 5000),
        sqlite_path=os.getenv("SQLITE_PATH", DEFAULT_SQLITE_PATH),
        default_radius_km=_env_float("DEFAULT_RADIUS_KM", 10.0),
        default_page_limit=default_page_limit,
        max_page_limit=max_page_limit,
        migration_lock_ttl_s=_env_int("MIGRATION_LOCK_TTL_S", 3600),
        skip_business_verification=_env_bool("SKIP_BUSINESS_VERIFICATION"),
        cors_origins=_parse_csv_env("CORS_ORIGINS", "*"),
        trusted_hosts=_parse_csv_env("TRUSTED_HOSTS", "*"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
