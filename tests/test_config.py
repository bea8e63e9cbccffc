import pytest

from listingscout.config import MissingCredentialError, Settings

ENV_KEYS = ["DATABASE_URL", "POSTGRES_URL", "SCRAPER_API_KEY", "MAX_WORKERS", "CRAIGSLIST_REGIONS",
            "FETCH_RETRIES", "ENABLE_SYNTHETIC_FALLBACK", "RUN_TIMEOUT_SECONDS"]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_from_env_reads_values(clean_env):
    clean_env.setenv("DATABASE_URL", "postgres://u:p@db:5432/scout")
    clean_env.setenv("SCRAPER_API_KEY", "abc")
    clean_env.setenv("MAX_WORKERS", "4")
    clean_env.setenv("CRAIGSLIST_REGIONS", "denver, boulder ,")
    clean_env.setenv("ENABLE_SYNTHETIC_FALLBACK", "true")
    s = Settings.from_env()
    assert s.database_url == "postgresql+psycopg2://u:p@db:5432/scout"
    assert s.scraper_api_key == "abc"
    assert s.max_workers == 4
    assert s.craigslist_regions == ("denver", "boulder")
    assert s.enable_synthetic_fallback is True


def test_from_env_clamps_and_ignores_garbage(clean_env):
    clean_env.setenv("FETCH_RETRIES", "99")
    clean_env.setenv("MAX_WORKERS", "lots")
    clean_env.setenv("RUN_TIMEOUT_SECONDS", "0")
    s = Settings.from_env()
    assert s.fetch_retries == 5
    assert s.max_workers == 1
    assert s.run_timeout_seconds == 1.0


def test_require_retrieval_credential():
    with pytest.raises(MissingCredentialError):
        Settings(scraper_api_key="").require_retrieval_credential()
    assert Settings(scraper_api_key="k").require_retrieval_credential() == "k"
