from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional
from datetime import datetime

class RunRequest(BaseModel):
    search_config_id: Optional[int] = Field(None, ge=1)

class RunResponse(BaseModel):
    success: bool
    listings_found: int
    sources_processed: int
    execution_time_ms: int

class ListingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    search_config_id: Optional[int] = None
    title: str
    price: int
    location: Optional[str] = None
    distance: Optional[float] = None
    distance_bucket: Optional[str] = None
    source: str
    tier: int
    url: str
    image_url: Optional[str] = None
    posted_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    discovered_at: Optional[datetime] = None

class SourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    name: str
    tier: int
    category: Optional[str] = None
    reliability_score: float
    is_active: bool
    attempt_count: int = 0
    success_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None

class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    module_name: str
    search_config_id: Optional[int] = None
    status: str
    message: Optional[str] = None
    listings_found: int = 0
    sources_processed: int = 0
    execution_time_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_details: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_")
