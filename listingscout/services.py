from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable

from sqlalchemy.orm import Session

from . import crud
from .entities import CandidateListing
from .utils import logger


@dataclass
class IngestStats:
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0


def listing_payload(candidate: CandidateListing, search_config_id) -> Dict:
    return {
        "search_config_id": search_config_id,
        "title": candidate.title[:500],
        "price": int(candidate.price),
        "location": candidate.location,
        "distance": candidate.distance,
        "source": candidate.source,
        "tier": candidate.tier,
        "url": candidate.url,
        "image_url": candidate.image_url,
        "posted_at": candidate.posted_at or datetime.now(timezone.utc),
        "latitude": candidate.latitude,
        "longitude": candidate.longitude,
    }


def ingest_listing(db: Session, candidate: CandidateListing, search_config_id) -> bool:
    # Basic normalization/validation
    if not candidate.url:
        raise ValueError("listing url missing")
    if candidate.price is None:
        raise ValueError(f"listing price missing for {candidate.url}")
    inserted = crud.insert_listing(db, listing_payload(candidate, search_config_id))
    if inserted:
        logger.info("Ingested listing %s", candidate.url)
    else:
        logger.debug("Listing already stored %s", candidate.url)
    return inserted


def ingest_candidates(db: Session, search_config_id, candidates: Iterable[CandidateListing]) -> IngestStats:
    """Store each candidate independently; one failure never blocks the rest."""
    stats = IngestStats()
    for candidate in candidates:
        try:
            if ingest_listing(db, candidate, search_config_id):
                stats.inserted += 1
            else:
                stats.duplicates += 1
        except Exception as e:
            db.rollback()
            stats.errors += 1
            logger.warning("Failed to store listing %s: %s", candidate.url, e)
    return stats
