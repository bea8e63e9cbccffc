"""Runtime configuration.

All environment access for the pipeline happens here, once, when
`Settings.from_env()` is called. The resulting object is passed to the
orchestrator, the fetcher and the API so credentials are injected at
construction rather than looked up on every call.
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv


class MissingCredentialError(RuntimeError):
    """A required external credential is not configured."""


def env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def env_float(name: str, default: float, *, min_value: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _database_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL") or "sqlite:///./listingscout.db"
    # SQLAlchemy 2.x doesn't accept 'postgres://'
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./listingscout.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10

    scraper_api_key: Optional[str] = None
    scraper_api_url: str = "http://api.scraperapi.com"
    opencage_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Denver, CO
    default_latitude: float = 39.7392
    default_longitude: float = -104.9903

    craigslist_regions: Tuple[str, ...] = ("denver", "boulder", "fortcollins", "pueblo")
    craigslist_state: str = "CO"

    fetch_cooldown_seconds: float = 2.0
    aggressive_cooldown_seconds: float = 3.0
    aggressive_domains: Tuple[str, ...] = ("facebook.com",)
    fetch_timeout_seconds: float = 60.0
    fetch_retries: int = 2
    geocode_interval_seconds: float = 0.1

    max_workers: int = 1
    run_timeout_seconds: float = 900.0
    max_registry_sources: int = 15
    terms_per_source: int = 2
    max_candidates_per_source: int = 10
    enable_synthetic_fallback: bool = False

    activity_module_name: str = "marketplace-search"
    scheduler_enabled: bool = False
    schedule_interval_hours: int = 1
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=_database_url(),
            db_pool_size=env_int("DB_POOL_SIZE", 5, min_value=1),
            db_max_overflow=env_int("DB_MAX_OVERFLOW", 10, min_value=0),
            scraper_api_key=os.getenv("SCRAPER_API_KEY") or None,
            scraper_api_url=os.getenv("SCRAPER_API_URL", "http://api.scraperapi.com"),
            opencage_api_key=os.getenv("OPENCAGE_API_KEY") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            default_latitude=env_float("DEFAULT_LATITUDE", 39.7392),
            default_longitude=env_float("DEFAULT_LONGITUDE", -104.9903),
            craigslist_regions=env_list("CRAIGSLIST_REGIONS", "denver,boulder,fortcollins,pueblo"),
            craigslist_state=os.getenv("CRAIGSLIST_STATE", "CO"),
            fetch_cooldown_seconds=env_float("FETCH_COOLDOWN_SECONDS", 2.0, min_value=0.0),
            aggressive_cooldown_seconds=env_float("AGGRESSIVE_COOLDOWN_SECONDS", 3.0, min_value=0.0),
            aggressive_domains=env_list("AGGRESSIVE_DOMAINS", "facebook.com"),
            fetch_timeout_seconds=env_float("FETCH_TIMEOUT_SECONDS", 60.0, min_value=1.0),
            fetch_retries=env_int("FETCH_RETRIES", 2, min_value=1, max_value=5),
            geocode_interval_seconds=env_float("GEOCODE_INTERVAL_SECONDS", 0.1, min_value=0.0),
            max_workers=env_int("MAX_WORKERS", 1, min_value=1, max_value=16),
            run_timeout_seconds=env_float("RUN_TIMEOUT_SECONDS", 900.0, min_value=1.0),
            max_registry_sources=env_int("MAX_REGISTRY_SOURCES", 15, min_value=0, max_value=200),
            terms_per_source=env_int("TERMS_PER_SOURCE", 2, min_value=1, max_value=6),
            max_candidates_per_source=env_int("MAX_CANDIDATES_PER_SOURCE", 10, min_value=1, max_value=10),
            enable_synthetic_fallback=env_bool("ENABLE_SYNTHETIC_FALLBACK", False),
            activity_module_name=os.getenv("ACTIVITY_MODULE_NAME", "marketplace-search"),
            scheduler_enabled=env_bool("SCHEDULER_ENABLED", False),
            schedule_interval_hours=env_int("SCHEDULE_INTERVAL_HOURS", 1, min_value=1),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def global_fetch_interval(self) -> float:
        # a single worker reproduces the strictly sequential spacing
        return self.fetch_cooldown_seconds if self.max_workers == 1 else 0.0

    def require_retrieval_credential(self) -> str:
        if not self.scraper_api_key:
            raise MissingCredentialError("SCRAPER_API_KEY not configured")
        return self.scraper_api_key


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
