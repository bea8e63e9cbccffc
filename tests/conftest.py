import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from listingscout.config import Settings
from listingscout.db import Base
from listingscout.fetcher import HTTPStatusError
from listingscout.models import SearchConfig, Source


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()

@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        scraper_api_key="test-key",
        fetch_cooldown_seconds=0.0,
        aggressive_cooldown_seconds=0.0,
        fetch_retries=1,
        geocode_interval_seconds=0.0,
        craigslist_regions=("denver",),
        run_timeout_seconds=60.0,
    )

@pytest.fixture
def civic(db):
    spec = SearchConfig(brand="Honda", model="Civic", price_threshold=15000, price_multiplier=1.5,
                        location=None, is_active=True)
    db.add(spec)
    db.commit()
    db.refresh(spec)
    return spec

@pytest.fixture
def add_source(db):
    def _add(url, name, tier=2, category=None, score=0.5, active=True):
        source = Source(url=url, name=name, tier=tier, category=category,
                        reliability_score=score, is_active=active)
        db.add(source)
        db.commit()
        db.refresh(source)
        return source
    return _add


class FakeFetcher:
    """Serves canned pages keyed by a URL fragment; unknown URLs get a 404."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        for fragment, body in self.pages.items():
            if fragment in url:
                if isinstance(body, Exception):
                    raise body
                return body
        raise HTTPStatusError(url, 404)

@pytest.fixture
def fake_fetcher():
    return FakeFetcher


class FakeGeocoder:
    def __init__(self, known=None, fail=False):
        self.known = {k.lower(): v for k, v in (known or {}).items()}
        self.fail = fail
        self.queries = []

    def geocode(self, query):
        self.queries.append(query)
        if self.fail:
            raise RuntimeError("geocoder down")
        return self.known.get((query or "").strip().lower())

@pytest.fixture
def fake_geocoder():
    return FakeGeocoder


class FakeResponse:
    def __init__(self, status_code=200, text="", payload=None):
        self.status_code = status_code
        self.text = text
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self):
        import requests
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, url, kwargs):
        self.requests.append((url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next(url, kwargs)

    def post(self, url, **kwargs):
        return self._next(url, kwargs)

@pytest.fixture
def fake_session():
    return FakeSession

@pytest.fixture
def fake_response():
    return FakeResponse


CORRELATION_PAGE = """
<html><head><title>Search</title></head><body>
<p><a href="/listing/civic-ex">Honda Civic EX 2016</a> <span>$18,500</span></p>
<p><a href="/listing/civic-si">Honda Civic Si 2019</a> <span>$23,000</span></p>
<p><a href="/listing/civic-lx">Honda Civic LX 2012</a> <span>$9,800</span></p>
</body></html>
"""

JSON_LD_PAGE = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "ItemList", "itemListElement": [
  {"@type": "ListItem", "position": 1, "item": {
     "@type": "Product", "name": "2017 Honda Civic Touring", "url": "https://dealer.example/cars/17",
     "image": "https://dealer.example/img/17.jpg",
     "offers": {"@type": "Offer", "price": "17995.00", "priceCurrency": "USD"}}},
  {"@type": "ListItem", "position": 2, "item": {
     "@type": "Product", "name": "2015 Honda Civic LX", "url": "https://dealer.example/cars/15",
     "offers": {"@type": "Offer", "price": 11250, "priceCurrency": "USD"}}}
]}
</script></head>
<body><a href="/other">Honda Civic accessories</a> $25</body></html>
"""

CRAIGSLIST_PAGE = """
<html><body><ol>
<li class="cl-static-search-result" title="2016 Honda Civic EX">
  <a href="https://denver.craigslist.org/cto/d/denver-honda-civic/7700000001.html">
    <div class="title">2016 Honda Civic EX</div>
    <div class="details"><div class="price">$14,900</div><div class="location">Lakewood</div></div>
  </a>
</li>
<li class="cl-static-search-result" title="Honda Civic parts">
  <a href="https://denver.craigslist.org/pts/d/honda-civic-parts/7700000002.html">
    <div class="title">Honda Civic parts</div>
    <div class="details"><div class="price">$40</div></div>
  </a>
</li>
</ol></body></html>
"""

EBAY_PAGE = """
<html><body><ul>
<li class="s-item">
  <div class="s-item__wrapper">
    <a class="s-item__link" href="https://www.ebay.com/itm/1234567?hash=item1&amp;_trkparms=abc">
      <div class="s-item__title"><span>Honda Civic Si 2019 Coupe</span></div>
    </a>
    <span class="s-item__price">$21,000.00</span>
    <span class="s-item__location">from Denver, CO</span>
  </div>
</li>
</ul></body></html>
"""

OPAQUE_PAGE = "<html><head><script>window.__boot=1</script></head><body><div id='root'></div></body></html>"


@pytest.fixture
def pages():
    return {
        "correlation": CORRELATION_PAGE,
        "json_ld": JSON_LD_PAGE,
        "craigslist": CRAIGSLIST_PAGE,
        "ebay": EBAY_PAGE,
        "opaque": OPAQUE_PAGE,
    }
