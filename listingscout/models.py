"""SQLAlchemy ORM models for persisted entities.

`SearchConfig` rows are owned by the configuration surface, `Source` rows by
the discovery collaborators; the pipeline reads both and only touches
`SearchConfig.last_run_at` and the `Source` reliability columns. `Listing` is
deduplicated on `url` by a unique constraint. `ActivityLog` is append-only.
"""
from sqlalchemy import (
    Column, Integer, Text, Numeric, Float, Boolean, TIMESTAMP, JSON, func, Index, ForeignKey,
)
from sqlalchemy.dialects.postgresql import JSONB
from .db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

# reliability score bounds for registry sources
MIN_SCORE = 0.1
MAX_SCORE = 1.0

class SearchConfig(Base):
    __tablename__ = "search_configs"
    id = Column(Integer, primary_key=True, index=True)
    brand = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    qualifier = Column(Text)
    sub_qualifier = Column(Text)
    year_start = Column(Integer)
    year_end = Column(Integer)
    price_threshold = Column(Integer, nullable=False)
    price_multiplier = Column(Numeric(4, 2), nullable=False, default=1.0)
    location = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    last_run_at = Column(TIMESTAMP(timezone=True))


class Source(Base):
    __tablename__ = "sources"
    id = Column(Integer, primary_key=True, index=True)
    url = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    tier = Column(Integer, nullable=False)
    category = Column(Text)
    reliability_score = Column(Float, nullable=False, default=0.5)
    is_active = Column(Boolean, nullable=False, default=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(TIMESTAMP(timezone=True))
    last_success_at = Column(TIMESTAMP(timezone=True))
    discovered_by = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class IgnoredSource(Base):
    __tablename__ = "ignored_sources"
    id = Column(Integer, primary_key=True, index=True)
    url = Column(Text, nullable=False)
    name = Column(Text)
    reason = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, index=True)
    search_config_id = Column(Integer, ForeignKey("search_configs.id", ondelete="CASCADE"), index=True)
    title = Column(Text, nullable=False)
    price = Column(Integer, nullable=False)
    location = Column(Text)
    distance = Column(Float)
    source = Column(Text, nullable=False)
    tier = Column(Integer, nullable=False)
    url = Column(Text, nullable=False, unique=True)
    image_url = Column(Text)
    posted_at = Column(TIMESTAMP(timezone=True))
    latitude = Column(Float)
    longitude = Column(Float)
    discovered_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class ActivityLog(Base):
    __tablename__ = "scrape_activity_log"
    id = Column(Integer, primary_key=True, index=True)
    module_name = Column(Text, nullable=False)
    # not a foreign key: the audit trail outlives the search configs it mentions
    search_config_id = Column(Integer, index=True)
    status = Column(Text, nullable=False)
    message = Column(Text)
    listings_found = Column(Integer, nullable=False, default=0)
    sources_processed = Column(Integer, nullable=False, default=0)
    execution_time_ms = Column(Integer)
    started_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    completed_at = Column(TIMESTAMP(timezone=True))
    error_details = Column(JSONType)
    metadata_ = Column("metadata", JSONType)

Index("idx_listings_price", Listing.price)
Index("idx_listings_distance", Listing.distance)
Index("idx_listings_tier", Listing.tier)
Index("idx_sources_score", Source.reliability_score)
Index("idx_scrape_log_module", ActivityLog.module_name)
Index("idx_scrape_log_status", ActivityLog.status)
Index("idx_scrape_log_started_at", ActivityLog.started_at)
