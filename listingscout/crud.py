"""Storage helpers for listings, search configs and the activity log.

Listing inserts are idempotent on `url`: the unique constraint decides, so
two sources racing to store the same listing still end up with one row.
The activity log is append-only.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .models import ActivityLog, Listing, SearchConfig, Source

LISTING_COLUMNS = {c.name for c in Listing.__table__.columns} - {"id", "discovered_at"}


def _insert_for(db: Session):
    return pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert


def insert_listing(db: Session, data: Dict[str, Any]) -> bool:
    """Insert a listing unless its URL is already stored.

    Returns True when a row was written, False for a duplicate. The existing
    row is authoritative; nothing is overwritten.
    """
    values = {k: v for k, v in data.items() if k in LISTING_COLUMNS}
    stmt = _insert_for(db)(Listing.__table__).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=["url"])
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1

def get_listing(db: Session, listing_id: int):
    return db.query(Listing).filter(Listing.id == listing_id).first()

def get_listing_by_url(db: Session, url: str):
    return db.query(Listing).filter(Listing.url == url).first()

def count_listings(db: Session, url: Optional[str] = None) -> int:
    q = db.query(Listing)
    if url is not None:
        q = q.filter(Listing.url == url)
    return q.count()

def list_listings(db: Session, skip: int = 0, limit: int = 50, filters: Dict = None):
    q = db.query(Listing)
    if filters:
        conds = []
        if filters.get("search_config_id") is not None:
            conds.append(Listing.search_config_id == filters["search_config_id"])
        if filters.get("min_price") is not None:
            conds.append(Listing.price >= filters["min_price"])
        if filters.get("max_price") is not None:
            conds.append(Listing.price <= filters["max_price"])
        if filters.get("tier") is not None:
            conds.append(Listing.tier == filters["tier"])
        if filters.get("source"):
            conds.append(Listing.source.ilike(f"%{filters['source']}%"))
        if filters.get("location"):
            conds.append(Listing.location.ilike(f"%{filters['location']}%"))
        bucket = filters.get("distance_bucket")
        if bucket == "<100":
            conds.append(Listing.distance < 100)
        elif bucket == "100-500":
            conds.append(and_(Listing.distance >= 100, Listing.distance <= 500))
        elif bucket == ">500":
            conds.append(Listing.distance > 500)
        if conds:
            q = q.filter(and_(*conds))
    total = q.count()
    items = q.order_by(Listing.discovered_at.desc(), Listing.id.desc()).offset(skip).limit(limit).all()
    return {"total": total, "items": items}


def get_search_config(db: Session, config_id: int) -> Optional[SearchConfig]:
    return db.get(SearchConfig, config_id)

def active_search_configs(db: Session) -> List[SearchConfig]:
    stmt = select(SearchConfig).where(SearchConfig.is_active.is_(True)).order_by(SearchConfig.id)
    return list(db.execute(stmt).scalars())

def touch_last_run(db: Session, config_id: int):
    db.execute(
        update(SearchConfig)
        .where(SearchConfig.id == config_id)
        .values(last_run_at=datetime.now(timezone.utc))
    )
    db.commit()


def list_sources(db: Session, tier: Optional[int] = None, active_only: bool = False) -> List[Source]:
    q = db.query(Source)
    if tier is not None:
        q = q.filter(Source.tier == tier)
    if active_only:
        q = q.filter(Source.is_active.is_(True))
    return q.order_by(Source.reliability_score.desc(), Source.id).all()


def log_activity(db: Session, module_name: str, status: str, message: str = None,
                 search_config_id: Optional[int] = None, listings_found: int = 0,
                 sources_processed: int = 0, execution_time_ms: Optional[int] = None,
                 error_details: Optional[dict] = None, metadata: Optional[dict] = None) -> ActivityLog:
    entry = ActivityLog(
        module_name=module_name,
        search_config_id=search_config_id,
        status=status,
        message=message,
        listings_found=listings_found,
        sources_processed=sources_processed,
        execution_time_ms=execution_time_ms,
        completed_at=None if status == "started" else datetime.now(timezone.utc),
        error_details=error_details,
        metadata_=metadata,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry

def list_activity(db: Session, module_name: str = None, status: str = None,
                  search_config_id: int = None, since: datetime = None, limit: int = 100) -> List[ActivityLog]:
    q = db.query(ActivityLog)
    if module_name:
        q = q.filter(ActivityLog.module_name == module_name)
    if status:
        q = q.filter(ActivityLog.status == status)
    if search_config_id is not None:
        q = q.filter(ActivityLog.search_config_id == search_config_id)
    if since is not None:
        q = q.filter(ActivityLog.started_at >= since)
    return q.order_by(ActivityLog.id.desc()).limit(limit).all()
