"""Source registry and marketplace catalog.

Tier-1 marketplaces are a fixed catalog built from settings. Tier-2 and
tier-3 sources live in the `sources` table, written by the discovery
collaborators; the pipeline only reads them and adjusts their reliability
score after every attempt.
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from urllib.parse import quote_plus

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from .entities import (
    FAMILY_CRAIGSLIST, FAMILY_EBAY, FAMILY_FACEBOOK, FAMILY_GENERIC, SourceTarget,
)
from .models import IgnoredSource, MAX_SCORE, MIN_SCORE, Source
from .utils import host_of, logger, normalize_source_url

SUCCESS_STEP = 0.1
FAILURE_STEP = 0.05

# search URL templates for well-known marketplaces, keyed by host fragment
KNOWN_SEARCH_TEMPLATES = {
    "reverb.com": "https://reverb.com/marketplace?query={term}",
    "bhphotovideo.com": "https://www.bhphotovideo.com/c/search?Ntt={term}",
    "adorama.com": "https://www.adorama.com/l/Used-Equipment?searchinfo={term}",
    "keh.com": "https://www.keh.com/shop/?s={term}",
    "ebay.com": "https://www.ebay.com/sch/i.html?_nkw={term}",
    "amazon.com": "https://www.amazon.com/s?k={term}",
    "facebook.com": "https://www.facebook.com/marketplace/search/?query={term}",
}

# conservative guesses for sites without a known template
GENERIC_SEARCH_PATTERNS = ["/search?q={term}", "/search?query={term}", "?s={term}"]


def family_for(url: str) -> str:
    host = host_of(url)
    if host.endswith("craigslist.org"):
        return FAMILY_CRAIGSLIST
    if host.startswith("ebay.") or ".ebay." in host:
        return FAMILY_EBAY
    if host.endswith("facebook.com"):
        return FAMILY_FACEBOOK
    return FAMILY_GENERIC


def primary_targets(settings) -> List[SourceTarget]:
    """The fixed tier-1 marketplace set, always queried."""
    targets = [
        SourceTarget(
            name="Facebook Marketplace",
            url="https://www.facebook.com/marketplace",
            tier=1,
            family=FAMILY_FACEBOOK,
            search_template="https://www.facebook.com/marketplace/search/?query={term}",
            default_location="Facebook Marketplace",
        ),
        SourceTarget(
            name="eBay",
            url="https://www.ebay.com",
            tier=1,
            family=FAMILY_EBAY,
            # buy-it-now, newly listed first
            search_template="https://www.ebay.com/sch/i.html?_nkw={term}&LH_BIN=1&_sop=10",
            default_location="eBay",
        ),
    ]
    for region in settings.craigslist_regions:
        label = region.replace("_", " ").title()
        if settings.craigslist_state:
            label = f"{label}, {settings.craigslist_state}"
        targets.append(SourceTarget(
            name=f"Craigslist {region}",
            url=f"https://{region}.craigslist.org",
            tier=1,
            family=FAMILY_CRAIGSLIST,
            search_template=f"https://{region}.craigslist.org/search/sss?query={{term}}",
            default_location=label,
        ))
    return targets


def target_for_source(source: Source) -> SourceTarget:
    template = None
    host = host_of(source.url)
    for fragment, known in KNOWN_SEARCH_TEMPLATES.items():
        if host == fragment or host.endswith("." + fragment):
            template = known
            break
    return SourceTarget(
        name=source.name,
        url=source.url,
        tier=source.tier,
        family=family_for(source.url),
        source_id=source.id,
        search_template=template,
        default_location=source.name,
    )


def search_urls(target: SourceTarget, term: str) -> List[str]:
    """Candidate search URLs for one term, best guess first."""
    encoded = quote_plus(term)
    if target.search_template:
        return [target.search_template.format(term=encoded)]
    base = target.url.rstrip("/")
    return [base + pattern.format(term=encoded) for pattern in GENERIC_SEARCH_PATTERNS]


def excluded_source_urls(db: Session) -> set:
    rows = db.execute(select(IgnoredSource.url)).scalars().all()
    return {normalize_source_url(u) for u in rows if u}


def candidate_sources(db: Session, category: Optional[str], excluded_urls: Optional[Iterable[str]] = None,
                      limit: Optional[int] = None) -> List[Source]:
    """Active registry sources for a category, best reliability first.

    Sources without a category match every search; a `None` category
    (unclassified search) applies no category filter at all. URLs in the
    persistent exclusion list, or in `excluded_urls`, are skipped.
    """
    if limit is not None and limit <= 0:
        return []
    stmt = select(Source).where(Source.is_active.is_(True))
    if category:
        stmt = stmt.where(or_(Source.category.is_(None), func.lower(Source.category) == category.lower()))
    stmt = stmt.order_by(Source.reliability_score.desc(), Source.id.asc())

    excluded = excluded_source_urls(db)
    excluded.update(normalize_source_url(u) for u in (excluded_urls or ()))

    result = []
    for source in db.execute(stmt).scalars():
        if normalize_source_url(source.url) in excluded:
            continue
        result.append(source)
        if limit is not None and len(result) >= limit:
            break
    return result


def record_outcome(db: Session, source_id: int, success: bool) -> Optional[float]:
    """Nudge a source's reliability score after an attempt.

    +0.1 on success capped at 1.0, -0.05 on failure floored at 0.1. The
    clamp happens inside one UPDATE so concurrent writers cannot lose an
    adjustment. Errors are logged and swallowed; returns the new score.
    """
    delta = SUCCESS_STEP if success else -FAILURE_STEP
    raw = Source.reliability_score + delta
    clamped = case(
        (raw > MAX_SCORE, MAX_SCORE),
        (raw < MIN_SCORE, MIN_SCORE),
        else_=raw,
    )
    now = datetime.now(timezone.utc)
    values = {
        "reliability_score": clamped,
        "attempt_count": Source.attempt_count + 1,
        "last_attempt_at": now,
    }
    if success:
        values["success_count"] = Source.success_count + 1
        values["last_success_at"] = now
    try:
        db.execute(update(Source).where(Source.id == source_id).values(**values))
        db.commit()
        score = db.execute(select(Source.reliability_score).where(Source.id == source_id)).scalar_one_or_none()
        logger.debug("Source %s reliability -> %s", source_id, score)
        return score
    except Exception as e:
        db.rollback()
        logger.warning("Failed updating reliability for source %s: %s", source_id, e)
        return None
