from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List
from .. import crud, schemas
from ..db import get_db
from ..geo import distance_bucket
from ..utils import logger

router = APIRouter()

@router.get("/health")
def health():
    return {"status": "ok"}

@router.post("/runs", response_model=schemas.RunResponse, responses={500: {"description": "Run failed"}})
def trigger_run(request: Request, payload: schemas.RunRequest = None):
    orchestrator = request.app.state.orchestrator_factory()
    search_config_id = payload.search_config_id if payload else None
    try:
        result = orchestrator.run(search_config_id)
    except Exception as e:
        logger.exception("Run failed: %s", e)
        return JSONResponse(status_code=500, content={"error": "run failed"})
    if result.error:
        return JSONResponse(status_code=500, content=result.as_dict())
    return result.as_dict()

def _listing_out(obj):
    out = schemas.ListingOut.model_validate(obj)
    return out.model_copy(update={"distance_bucket": distance_bucket(obj.distance)})

@router.get("/listings", response_model=List[schemas.ListingOut])
def listings(
    skip: int = 0,
    limit: int = Query(20, le=200),
    search_config_id: int | None = Query(None),
    min_price: int | None = Query(None),
    max_price: int | None = Query(None),
    tier: int | None = Query(None, ge=1, le=3),
    source: str | None = Query(None),
    location: str | None = Query(None),
    distance_bucket: str | None = Query(None, pattern=r"^(<100|100-500|>500)$"),
    db: Session = Depends(get_db)
):
    filters = {
        "search_config_id": search_config_id,
        "min_price": min_price,
        "max_price": max_price,
        "tier": tier,
        "source": source,
        "location": location,
        "distance_bucket": distance_bucket,
    }
    res = crud.list_listings(db, skip=skip, limit=limit, filters=filters)
    return [_listing_out(obj) for obj in res["items"]]


@router.get("/listings/{listing_id}", response_model=schemas.ListingOut)
def get_listing(listing_id: int, db: Session = Depends(get_db)):
    obj = crud.get_listing(db, listing_id)
    if not obj:
        raise HTTPException(status_code=404, detail="Listing not found")
    return _listing_out(obj)


@router.get("/sources", response_model=List[schemas.SourceOut])
def sources(tier: int | None = Query(None, ge=2, le=3), active_only: bool = False, db: Session = Depends(get_db)):
    return crud.list_sources(db, tier=tier, active_only=active_only)


@router.get("/activity", response_model=List[schemas.ActivityOut])
def activity(
    module_name: str | None = Query(None),
    status: str | None = Query(None, pattern=r"^(started|success|partial_success|failure)$"),
    search_config_id: int | None = Query(None),
    limit: int = Query(50, le=500),
    db: Session = Depends(get_db)
):
    return crud.list_activity(db, module_name=module_name, status=status,
                              search_config_id=search_config_id, limit=limit)
