import threading
import time
from dataclasses import replace

import pytest

from listingscout import crud
from listingscout.config import Settings
from listingscout.entities import FAMILY_GENERIC, SourceTarget
from listingscout.fetcher import HTTPStatusError
from listingscout.models import ActivityLog, Listing, SearchConfig, Source
from listingscout.orchestrator import RunOrchestrator
from listingscout.sources import primary_targets

SHARED_PAGE = '<p><a href="https://shared.example/civic-1">Honda Civic EX 2016</a> <span>$18,500</span></p>'


def site(name, host):
    return SourceTarget(name=name, url=f"https://{host}", tier=1, family=FAMILY_GENERIC,
                        search_template=f"https://{host}/search?q={{term}}")


class FixedClassifier:
    def __init__(self, category):
        self.category = category

    def classify(self, spec):
        return self.category


def activity_rows(db):
    db.expire_all()
    return db.query(ActivityLog).order_by(ActivityLog.id).all()


def test_missing_credential_fails_fast(db, session_factory, civic, fake_fetcher):
    fetcher = fake_fetcher({})
    orchestrator = RunOrchestrator(Settings(scraper_api_key=None), session_factory, fetcher=fetcher, primary=[])
    result = orchestrator.run(civic.id)

    assert result.as_dict() == {"error": "SCRAPER_API_KEY not configured"}
    assert fetcher.calls == []
    rows = activity_rows(db)
    assert [r.status for r in rows] == ["started", "failure"]
    assert rows[1].listings_found == 0
    assert rows[1].completed_at is not None
    assert db.query(Listing).count() == 0


def test_unknown_search_config(db, session_factory, settings, fake_fetcher):
    result = RunOrchestrator(settings, session_factory, fetcher=fake_fetcher({}), primary=[]).run(999)
    assert "999" in result.as_dict()["error"]
    assert [r.status for r in activity_rows(db)] == ["started", "failure"]


def test_inactive_search_config_is_not_run(db, session_factory, settings, civic, fake_fetcher):
    civic.is_active = False
    db.commit()
    result = RunOrchestrator(settings, session_factory, fetcher=fake_fetcher({}), primary=[]).run(civic.id)
    assert result.error


def test_price_filter_applied_end_to_end(db, session_factory, settings, civic, fake_fetcher, pages):
    fetcher = fake_fetcher({"cars.example": pages["correlation"]})
    orchestrator = RunOrchestrator(settings, session_factory, fetcher=fetcher,
                                   primary=[site("Example Cars", "cars.example")])
    result = orchestrator.run(civic.id)

    assert result.success and result.status == "success"
    assert result.listings_found == 2
    prices = sorted(p for (p,) in db.query(Listing.price).all())
    assert prices == [9800, 18500]
    assert all(l.search_config_id == civic.id for l in db.query(Listing).all())
    # the source's own name is not a place
    assert {l.distance for l in db.query(Listing).all()} == {0.0}

    rows = activity_rows(db)
    assert [r.status for r in rows] == ["started", "success"]
    assert rows[-1].listings_found == 2
    assert rows[-1].sources_processed == 1
    assert rows[-1].execution_time_ms is not None
    search_meta = rows[-1].metadata_["searches"][0]
    assert search_meta["max_price"] == 22500
    assert search_meta["search_terms"][0] == "Honda Civic"


def test_same_url_from_two_sources_stored_once(db, session_factory, settings, civic, fake_fetcher):
    fetcher = fake_fetcher({"one.example": SHARED_PAGE, "two.example": SHARED_PAGE})
    orchestrator = RunOrchestrator(settings, session_factory, fetcher=fetcher,
                                   primary=[site("One", "one.example"), site("Two", "two.example")])
    result = orchestrator.run(civic.id)

    assert crud.count_listings(db, url="https://shared.example/civic-1") == 1
    assert result.listings_found == 1
    assert result.sources_processed == 2
    assert activity_rows(db)[-1].metadata_["duplicates"] >= 1


def test_second_run_inserts_nothing_new(db, session_factory, settings, civic, fake_fetcher):
    def run():
        fetcher = fake_fetcher({"one.example": SHARED_PAGE})
        return RunOrchestrator(settings, session_factory, fetcher=fetcher,
                               primary=[site("One", "one.example")]).run(civic.id)

    assert run().listings_found == 1
    assert run().listings_found == 0
    assert db.query(Listing).count() == 1


def test_failing_source_gives_partial_success(db, session_factory, settings, civic, fake_fetcher):
    fetcher = fake_fetcher({"one.example": SHARED_PAGE})
    orchestrator = RunOrchestrator(settings, session_factory, fetcher=fetcher,
                                   primary=[site("One", "one.example"), site("Down", "down.example")])
    result = orchestrator.run(civic.id)

    assert result.status == "partial_success"
    assert result.as_dict()["success"] is True
    assert result.listings_found == 1
    final = activity_rows(db)[-1]
    assert final.status == "partial_success"
    errors = final.metadata_["errors"]
    assert [e["source"] for e in errors] == ["Down"]
    assert "HTTP 404" in errors[0]["reason"]


def test_registry_scores_follow_outcomes(db, session_factory, settings, civic, add_source, fake_fetcher):
    good = add_source("https://good.example", "Good Cars", tier=2)
    bad = add_source("https://bad.example", "Bad Cars", tier=3)
    page = '<p><a href="https://good.example/item/1">Honda Civic LX</a> $9,000</p>'
    fetcher = fake_fetcher({"good.example": page})
    RunOrchestrator(settings, session_factory, fetcher=fetcher, primary=[]).run(civic.id)

    db.expire_all()
    assert db.get(Source, good.id).reliability_score == pytest.approx(0.6)
    assert db.get(Source, bad.id).reliability_score == pytest.approx(0.45)
    assert db.get(Source, bad.id).attempt_count == 1
    # unknown sites only get the first term, tried against each search pattern
    assert len([u for u in fetcher.calls if "bad.example" in u]) == 3
    listing = crud.get_listing_by_url(db, "https://good.example/item/1")
    assert listing.tier == 2 and listing.source == "Good Cars"


def test_category_narrows_registry_sources(db, session_factory, settings, civic, add_source, fake_fetcher):
    add_source("https://cars.example", "Cars", category="Automotive")
    add_source("https://lenses.example", "Lenses", category="Camera")
    fetcher = fake_fetcher({})
    RunOrchestrator(settings, session_factory, fetcher=fetcher, primary=[],
                    classifier=FixedClassifier("Automotive")).run(civic.id)
    assert fetcher.calls
    assert all("cars.example" in u for u in fetcher.calls)


def test_excluded_and_capped_registry(db, session_factory, settings, civic, add_source, fake_fetcher):
    add_source("https://a.example", "A", score=0.9)
    add_source("https://b.example", "B", score=0.8)
    fetcher = fake_fetcher({})
    RunOrchestrator(replace(settings, max_registry_sources=1), session_factory,
                    fetcher=fetcher, primary=[]).run(civic.id)
    assert all("a.example" in u for u in fetcher.calls)


def test_craigslist_listings_get_distances(db, session_factory, settings, civic, fake_fetcher,
                                           fake_geocoder, pages):
    geocoder = fake_geocoder({"Lakewood, Denver, CO": (39.7047, -105.0814)})
    fetcher = fake_fetcher({"craigslist.org": pages["craigslist"]})
    targets = [t for t in primary_targets(settings) if t.name.startswith("Craigslist")]
    result = RunOrchestrator(settings, session_factory, fetcher=fetcher, geocoder=geocoder,
                             primary=targets).run(civic.id)

    assert result.listings_found == 2
    lakewood = crud.get_listing_by_url(db, "https://denver.craigslist.org/cto/d/denver-honda-civic/7700000001.html")
    assert lakewood.latitude == pytest.approx(39.7047)
    assert 0 < lakewood.distance < 100
    # "Denver, CO" is unknown to the fake geocoder: kept with no distance
    other = crud.get_listing_by_url(db, "https://denver.craigslist.org/pts/d/honda-civic-parts/7700000002.html")
    assert other.distance is None


def test_synthetic_links_are_reported_not_stored(db, session_factory, settings, civic, fake_fetcher, pages):
    fetcher = fake_fetcher({"opaque.example": pages["opaque"]})
    orchestrator = RunOrchestrator(replace(settings, enable_synthetic_fallback=True), session_factory,
                                   fetcher=fetcher, primary=[site("Opaque", "opaque.example")])
    result = orchestrator.run(civic.id)

    assert result.listings_found == 0
    assert db.query(Listing).count() == 0
    meta = activity_rows(db)[-1].metadata_
    assert meta["synthetic_links"]
    assert meta["errors"] == []


def test_all_active_configs_processed(db, session_factory, settings, civic, fake_fetcher):
    db.add(SearchConfig(brand="Yamaha", model="R1", price_threshold=8000, price_multiplier=1.2))
    db.add(SearchConfig(brand="Ducati", model="Monster", price_threshold=9000, is_active=False))
    db.commit()
    fetcher = fake_fetcher({})
    RunOrchestrator(settings, session_factory, fetcher=fetcher,
                    primary=[site("One", "one.example")]).run()
    final = activity_rows(db)[-1]
    assert final.search_config_id is None
    assert len(final.metadata_["searches"]) == 2
    db.expire_all()
    assert db.get(SearchConfig, civic.id).last_run_at is not None


def test_timeout_without_success_is_failure(db, session_factory, settings, civic, fake_fetcher):
    fetcher = fake_fetcher({"one.example": SHARED_PAGE})
    orchestrator = RunOrchestrator(replace(settings, run_timeout_seconds=0.0), session_factory,
                                   fetcher=fetcher, primary=[site("One", "one.example")])
    result = orchestrator.run(civic.id)

    assert result.status == "failure"
    assert result.as_dict()["success"] is False
    assert "error" not in result.as_dict()
    final = activity_rows(db)[-1]
    assert final.status == "failure"
    assert final.metadata_["timed_out"] is True


class SlowSiteFetcher:
    """Answers instantly except for slow.example, which hangs then fails."""

    def __init__(self, page, delay):
        self.page = page
        self.delay = delay
        self.slow_calls = []

    def fetch(self, url):
        if "slow.example" in url:
            self.slow_calls.append(url)
            time.sleep(self.delay)
            raise HTTPStatusError(url, 503)
        return self.page


class ThreadRecordingFetcher:
    def __init__(self, page):
        self.page = page
        self.threads = set()
        self._lock = threading.Lock()

    def fetch(self, url):
        with self._lock:
            self.threads.add(threading.current_thread().name)
        return self.page


def test_timeout_after_a_success_is_partial_and_stops_fetching(db, session_factory, settings, civic):
    fetcher = SlowSiteFetcher(SHARED_PAGE, delay=0.6)
    slow = SourceTarget(name="Slow", url="https://slow.example", tier=2, family=FAMILY_GENERIC)
    orchestrator = RunOrchestrator(replace(settings, run_timeout_seconds=0.3, max_workers=2), session_factory,
                                   fetcher=fetcher, primary=[site("One", "one.example"), slow])
    result = orchestrator.run(civic.id)

    assert result.status == "partial_success"
    assert result.success is True
    assert result.listings_found == 1
    final = activity_rows(db)[-1]
    assert final.status == "partial_success"
    assert final.metadata_["timed_out"] is True

    # the hung job finishes its request but does not start the other search patterns
    time.sleep(1.0)
    assert len(fetcher.slow_calls) == 1


def test_parallel_workers_store_shared_url_once(db, session_factory, settings, civic):
    fetcher = ThreadRecordingFetcher(SHARED_PAGE)
    targets = [site(f"Site {i}", f"site{i}.example") for i in range(4)]
    result = RunOrchestrator(replace(settings, max_workers=4), session_factory,
                             fetcher=fetcher, primary=targets).run(civic.id)

    assert result.status == "success"
    assert result.sources_processed == 4
    assert result.listings_found == 1
    assert crud.count_listings(db, url="https://shared.example/civic-1") == 1
    assert activity_rows(db)[-1].metadata_["duplicates"] == 3
    assert fetcher.threads
    assert all(name.startswith("source") for name in fetcher.threads)


def test_failure_after_ingestion_reports_stored_rows(db, session_factory, settings, civic, fake_fetcher,
                                                     fake_geocoder):
    db.add(SearchConfig(brand="Yamaha", model="R1", price_threshold=8000, location="Boulder, CO"))
    db.commit()
    fetcher = fake_fetcher({"one.example": SHARED_PAGE})
    # geocoding the second search's reference location blows up mid-run
    orchestrator = RunOrchestrator(settings, session_factory, fetcher=fetcher,
                                   geocoder=fake_geocoder(fail=True), primary=[site("One", "one.example")])
    result = orchestrator.run()

    assert result.error
    assert result.listings_found == 1
    final = activity_rows(db)[-1]
    assert final.status == "failure"
    assert final.listings_found == 1
    assert db.query(Listing).count() == 1
