"""Listing extraction from marketplace search pages.

Each strategy is a plain function `strategy(raw_text, context)` returning a
list of `CandidateListing`. The engine runs the cascade for the page's
marketplace family in a fixed order and keeps the first strategy whose
candidates pass the relevance filter:

1. structured data: JSON-LD Product/Offer/ItemList blocks and the embedded
   listing JSON Facebook Marketplace ships in its pages
2. site blocks: repeating listing containers located by known class names
   (craigslist, ebay) or by class-name fragments for everything else
3. link/price correlation: the i-th anchor paired with the i-th currency
   amount in document order, capped at ten pairs

When nothing at all can be extracted and the synthetic fallback is enabled,
the engine emits placeholder deep links into large marketplaces, flagged
`synthetic=True` and priced 0 so the price filter never persists them.
"""
import html
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote_plus

from bs4 import BeautifulSoup

from .entities import (
    FAMILY_CRAIGSLIST, FAMILY_EBAY, FAMILY_FACEBOOK, FAMILY_GENERIC,
    CandidateListing, ExtractionContext, ExtractionResult,
)
from .utils import canonical_url, logger

# try to detect available parser; prefer lxml if installed
try:
    import lxml  # type: ignore  # noqa: F401
    _bs_parser = "lxml"
except ImportError:
    _bs_parser = "html.parser"

MAX_CANDIDATES = 10
CORRELATION_CAP = 10

PRICE_RE = re.compile(r"(?:[$€£]|US\s?\$|USD)\s*(\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?")
ANCHOR_RE = re.compile(r"<a[^>]+href=[\"']([^\"']+)[\"'][^>]*>([^<]+)</a>", re.I)
WHITESPACE_RE = re.compile(r"\s+")

Strategy = Callable[[str, ExtractionContext], List[CandidateListing]]


def parse_price(text) -> Optional[int]:
    """Whole currency units from a price string, `None` when absent.

    Cents are truncated: "$1,234.56" -> 1234. Ranges keep the first amount.
    """
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return int(text) if text >= 0 else None
    text = str(text)
    m = PRICE_RE.search(text)
    if m:
        return int(m.group(1).replace(",", ""))
    m = re.search(r"\d[\d,]*(?:\.\d+)?", text)
    if not m:
        return None
    try:
        return int(float(m.group(0).replace(",", "")))
    except ValueError:
        return None


def _relevance_words(term: str) -> List[str]:
    return [w for w in term.lower().split() if len(w) > 2]


def is_relevant(title: str, term: str) -> bool:
    """Word-overlap gate: at least half of the term's words (len > 2) in the title."""
    words = _relevance_words(term)
    if not words:
        return True
    title_lower = (title or "").lower()
    matching = sum(1 for w in words if w in title_lower)
    return matching >= math.ceil(len(words) * 0.5)


def _clean_text(value) -> str:
    return WHITESPACE_RE.sub(" ", value or "").strip()


def _soup(raw: str) -> BeautifulSoup:
    return BeautifulSoup(raw, _bs_parser)


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _candidate(ctx: ExtractionContext, title, price, url, location=None, image_url=None,
               posted_at=None) -> Optional[CandidateListing]:
    title = _clean_text(title)
    if not title or not url:
        return None
    url = canonical_url(url, base=ctx.page_url)
    if not url.startswith("http"):
        return None
    return CandidateListing(
        title=title,
        price=price,
        location=_clean_text(location) or ctx.source.default_location or ctx.source.name,
        url=url,
        source=ctx.source.name,
        tier=ctx.source.tier,
        image_url=canonical_url(image_url, base=ctx.page_url) if image_url else None,
        posted_at=posted_at,
    )


# -- strategy 1: structured data ------------------------------------------

LD_PRODUCT_TYPES = {"product", "individualproduct", "vehicle", "car", "motorcycle", "offer"}


def _ld_types(node: dict) -> set:
    t = node.get("@type")
    if isinstance(t, list):
        return {str(x).lower() for x in t}
    return {str(t).lower()} if t else set()


def _walk_ld(data) -> Iterable[dict]:
    if isinstance(data, list):
        for item in data:
            yield from _walk_ld(item)
    elif isinstance(data, dict):
        if _ld_types(data) & LD_PRODUCT_TYPES:
            yield data
            return
        for key in ("@graph", "itemListElement", "item", "mainEntity"):
            if key in data:
                yield from _walk_ld(data[key])


def _first(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _ld_candidate(node: dict, ctx: ExtractionContext) -> Optional[CandidateListing]:
    offers = _first(node.get("offers")) or {}
    if "offer" in _ld_types(node):
        offers = node
    if not isinstance(offers, dict):
        offers = {}
    price_spec = _first(offers.get("priceSpecification")) or {}
    price = parse_price(offers.get("price") or offers.get("lowPrice")
                        or (price_spec.get("price") if isinstance(price_spec, dict) else None))
    item = offers.get("itemOffered") if isinstance(offers.get("itemOffered"), dict) else {}
    title = node.get("name") or item.get("name")
    url = node.get("url") or offers.get("url") or item.get("url")
    image = _first(node.get("image") or item.get("image"))
    if isinstance(image, dict):
        image = image.get("url")
    location = None
    seller_place = offers.get("availableAtOrFrom")
    if isinstance(seller_place, dict):
        address = seller_place.get("address")
        if isinstance(address, dict):
            location = ", ".join(p for p in (address.get("addressLocality"), address.get("addressRegion")) if p)
        elif isinstance(address, str):
            location = address
    if not title or price is None:
        return None
    return _candidate(ctx, title, price, url, location=location, image_url=image,
                      posted_at=_parse_datetime(node.get("datePosted") or offers.get("validFrom")))


FB_TITLE_RE = re.compile(r'"marketplace_listing_title":"((?:[^"\\]|\\.)*)"')
FB_ID_RE = re.compile(r'"id":"(\d{6,})"')
FB_PRICE_RE = re.compile(r'"(?:formatted_price|formatted_amount)":(?:\{"text":)?"((?:[^"\\]|\\.)*)"')
FB_LOCATION_RE = re.compile(
    r'(?:"marketplace_listing_location"|"city_page":\{[^{}]*?"display_name"):"((?:[^"\\]|\\.)*)"'
)
FB_WINDOW = 1500


def _json_unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value


def _facebook_listings(raw: str, ctx: ExtractionContext) -> List[CandidateListing]:
    results = []
    for m in FB_TITLE_RE.finditer(raw):
        before = raw[max(0, m.start() - FB_WINDOW):m.start()]
        after = raw[m.end():m.end() + FB_WINDOW]
        ids = FB_ID_RE.findall(before)
        price_m = FB_PRICE_RE.search(after) or FB_PRICE_RE.search(before)
        if not ids or not price_m:
            continue
        loc_m = FB_LOCATION_RE.search(after)
        cand = _candidate(
            ctx,
            _json_unescape(m.group(1)),
            parse_price(_json_unescape(price_m.group(1))),
            f"https://www.facebook.com/marketplace/item/{ids[-1]}/",
            location=_json_unescape(loc_m.group(1)) if loc_m else None,
        )
        if cand and cand.price:
            results.append(cand)
    return results


def structured_data(raw: str, ctx: ExtractionContext) -> List[CandidateListing]:
    """JSON-LD product metadata, then embedded marketplace listing JSON."""
    results = []
    soup = _soup(raw)
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        text = script.string or script.get_text()
        if not text:
            continue
        try:
            data = json.loads(text)
        except ValueError:
            continue
        for node in _walk_ld(data):
            cand = _ld_candidate(node, ctx)
            if cand:
                results.append(cand)
    if ctx.source.family == FAMILY_FACEBOOK or "marketplace_listing_title" in raw:
        results.extend(_facebook_listings(raw, ctx))
    return results


# -- strategy 2: site-specific blocks ---------------------------------------

@dataclass(frozen=True)
class BlockRule:
    containers: Sequence[str]
    title: Sequence[str]
    price: Sequence[str]
    link: Sequence[str] = ("a[href]",)
    location: Sequence[str] = ()
    image: Sequence[str] = ("img",)
    posted: Sequence[str] = ()


BLOCK_RULES: Dict[str, BlockRule] = {
    FAMILY_CRAIGSLIST: BlockRule(
        containers=("li.cl-search-result", "li.result-row", "li.cl-static-search-result", "div.result-node"),
        title=("a.result-title", "a.posting-title .label", "a.posting-title", ".title", ".titlestring"),
        price=(".result-price", ".priceinfo", ".price"),
        link=("a.result-title", "a.posting-title", "a.titlestring", "a[href]"),
        location=(".result-hood", ".meta .location", ".location"),
        posted=("time[datetime]",),
    ),
    FAMILY_EBAY: BlockRule(
        containers=("li.s-item", "div.s-item__wrapper", "li.s-card"),
        title=(".s-item__title", ".s-card__title"),
        price=(".s-item__price", ".s-card__price"),
        link=("a.s-item__link", "a.su-link", "a[href]"),
        location=(".s-item__location", ".s-item__itemLocation"),
    ),
}

# class fragments that usually mark a listing container on unknown sites
GENERIC_BLOCK_CLASS = re.compile(r"listing|item|product|result|(?:^|[-_])ad(?:$|[-_])", re.I)
GENERIC_BLOCK_TAGS = ["div", "li", "article"]


def _select_text(block, selectors: Sequence[str]) -> Optional[str]:
    for sel in selectors:
        el = block.select_one(sel)
        if el is not None:
            text = _clean_text(el.get_text(" ", strip=True))
            if text:
                return text
    return None


def _select_attr(block, selectors: Sequence[str], *attrs) -> Optional[str]:
    for sel in selectors:
        el = block.select_one(sel)
        if el is None:
            continue
        for attr in attrs:
            value = el.get(attr)
            if value:
                return value
    return None


def _rule_containers(soup, rule: BlockRule):
    for sel in rule.containers:
        found = soup.select(sel)
        if found:
            return found
    return []


def _generic_containers(soup):
    found = soup.find_all(GENERIC_BLOCK_TAGS, class_=GENERIC_BLOCK_CLASS)
    # keep the innermost containers; wrappers pair the first child's fields
    return [b for b in found if b.find(GENERIC_BLOCK_TAGS, class_=GENERIC_BLOCK_CLASS) is None]


def _generic_block_fields(block):
    title_el = (block.select_one('[class*="title"]')
                or block.find(["h1", "h2", "h3", "h4", "h5", "h6"]))
    link_el = block.find("a", href=True)
    title = _clean_text(title_el.get_text(" ", strip=True)) if title_el else None
    if not title and link_el is not None:
        title = _clean_text(link_el.get_text(" ", strip=True))
    price_el = block.select_one('[class*="price"]')
    price = parse_price(price_el.get_text(" ", strip=True)) if price_el else None
    if price is None:
        m = PRICE_RE.search(block.get_text(" ", strip=True))
        price = int(m.group(1).replace(",", "")) if m else None
    return title, price, link_el.get("href") if link_el is not None else None


def site_blocks(raw: str, ctx: ExtractionContext) -> List[CandidateListing]:
    """Repeating listing containers located by class names."""
    soup = _soup(raw)
    rule = BLOCK_RULES.get(ctx.source.family)
    results = []
    if rule is not None:
        for block in _rule_containers(soup, rule):
            title = _select_text(block, rule.title)
            price = parse_price(_select_text(block, rule.price))
            href = _select_attr(block, rule.link, "href")
            if not title or not price:
                continue
            hood = _select_text(block, rule.location) if rule.location else None
            location = None
            if hood:
                hood = hood.strip("() ")
                location = hood
                if ctx.source.family == FAMILY_CRAIGSLIST and ctx.source.default_location:
                    # neighbourhood names only geocode with the region attached
                    location = f"{hood}, {ctx.source.default_location}"
            cand = _candidate(
                ctx, title, price, href,
                location=location,
                image_url=_select_attr(block, rule.image, "src", "data-src"),
                posted_at=_parse_datetime(_select_attr(block, rule.posted, "datetime")) if rule.posted else None,
            )
            if cand:
                results.append(cand)
        return results

    for block in _generic_containers(soup):
        title, price, href = _generic_block_fields(block)
        if not title or not price or not href:
            continue
        img = block.find("img")
        cand = _candidate(ctx, title, price, href,
                          image_url=(img.get("src") or img.get("data-src")) if img is not None else None)
        if cand:
            results.append(cand)
    return results


# -- strategy 3: link / price correlation -----------------------------------

def link_price_correlation(raw: str, ctx: ExtractionContext) -> List[CandidateListing]:
    """Pair the i-th text anchor with the i-th currency amount.

    Assumes listing blocks interleave a link and a price in source order.
    """
    links = []
    for m in ANCHOR_RE.finditer(raw):
        href, text = html.unescape(m.group(1)).strip(), _clean_text(html.unescape(m.group(2)))
        if not text or href.startswith(("#", "javascript:", "mailto:")):
            continue
        links.append((href, text))
    prices = [int(m.group(1).replace(",", "")) for m in PRICE_RE.finditer(raw)]

    results = []
    for (href, text), price in zip(links[:CORRELATION_CAP], prices[:CORRELATION_CAP]):
        if not price:
            continue
        cand = _candidate(ctx, text, price, href)
        if cand:
            results.append(cand)
    return results


# -- strategy 4: synthetic fallback ------------------------------------------

SYNTHETIC_MARKETPLACES = [
    ("eBay", "https://www.ebay.com/sch/i.html?_nkw={term}"),
    ("Facebook Marketplace", "https://www.facebook.com/marketplace/search/?query={term}"),
    ("Mercari", "https://www.mercari.com/search/?keyword={term}"),
    ("OfferUp", "https://offerup.com/search?q={term}"),
    ("Craigslist", "https://www.craigslist.org/search/sss?query={term}"),
]


def synthetic_links(raw: str, ctx: ExtractionContext) -> List[CandidateListing]:
    encoded = quote_plus(ctx.term)
    return [
        CandidateListing(
            title=f"{ctx.term} - {name} search",
            price=0,
            location=None,
            url=template.format(term=encoded),
            source=ctx.source.name,
            tier=ctx.source.tier,
            synthetic=True,
        )
        for name, template in SYNTHETIC_MARKETPLACES
    ]


DEFAULT_CASCADE: List[Strategy] = [structured_data, site_blocks, link_price_correlation]


@dataclass
class ExtractionEngine:
    """Runs the strategy cascade for a page and applies the relevance gate."""
    cascades: Dict[str, List[Strategy]] = field(default_factory=dict)
    enable_synthetic: bool = False
    max_items: int = MAX_CANDIDATES

    def strategies_for(self, family: str) -> List[Strategy]:
        return self.cascades.get(family) or self.cascades.get(FAMILY_GENERIC) or DEFAULT_CASCADE

    def extract(self, raw: str, ctx: ExtractionContext) -> ExtractionResult:
        result = ExtractionResult()
        limit = min(self.max_items, ctx.max_items)
        for strategy in self.strategies_for(ctx.source.family):
            try:
                found = strategy(raw, ctx)
            except Exception:
                logger.exception("Strategy %s failed on %s", strategy.__name__, ctx.page_url)
                continue
            result.extracted += len(found)
            relevant = _dedupe(c for c in found if is_relevant(c.title, ctx.term))
            if relevant:
                result.candidates = relevant[:limit]
                result.strategy = strategy.__name__
                logger.debug("%s: %d relevant of %d via %s", ctx.source.name, len(relevant),
                             len(found), strategy.__name__)
                return result
        if self.enable_synthetic and result.extracted == 0:
            result.candidates = synthetic_links(raw, ctx)[:limit]
            result.strategy = synthetic_links.__name__
            result.synthetic = True
            logger.info("%s: page opaque, emitted %d synthetic links", ctx.source.name, len(result.candidates))
        return result


def _dedupe(candidates: Iterable[CandidateListing]) -> List[CandidateListing]:
    seen, out = set(), []
    for c in candidates:
        if c.url in seen:
            continue
        seen.add(c.url)
        out.append(c)
    return out
