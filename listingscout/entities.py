"""In-memory pipeline types.

`CandidateListing` objects only live for the duration of one source job:
extraction creates them, the geo resolver and filters pass along enriched
copies, and the ingestion store turns the survivors into `Listing` rows.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

FAMILY_CRAIGSLIST = "craigslist"
FAMILY_EBAY = "ebay"
FAMILY_FACEBOOK = "facebook"
FAMILY_GENERIC = "generic"


@dataclass(frozen=True)
class CandidateListing:
    title: str
    price: Optional[int]
    location: Optional[str]
    url: str
    source: str
    tier: int
    image_url: Optional[str] = None
    posted_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    distance: Optional[float] = None
    synthetic: bool = False


@dataclass(frozen=True)
class SourceTarget:
    """A marketplace to query: tier-1 catalog entry or registry row."""
    name: str
    url: str
    tier: int
    family: str = FAMILY_GENERIC
    source_id: Optional[int] = None
    search_template: Optional[str] = None
    default_location: Optional[str] = None

    @property
    def registry_backed(self) -> bool:
        return self.source_id is not None


@dataclass(frozen=True)
class ExtractionContext:
    source: SourceTarget
    term: str
    page_url: str
    max_items: int = 10


@dataclass
class ExtractionResult:
    candidates: List[CandidateListing] = field(default_factory=list)
    strategy: Optional[str] = None
    extracted: int = 0
    synthetic: bool = False
