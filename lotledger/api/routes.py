# lotledger/api/routes.py
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import crud, events, metrics, schemas
from ..db import get_db

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/stats/snapshots", response_model=List[schemas.SnapshotStats])
def snapshot_stats(limit: int = Query(20, ge=1, le=500), db: Session = Depends(get_db)):
    return metrics.snapshot_stats(db, limit=limit)


@router.get("/stats/events", response_model=Dict[str, int])
def event_stats(db: Session = Depends(get_db)):
    return metrics.event_counts(db)


@router.get("/stats/outcomes", response_model=schemas.OutcomeStats)
def outcome_stats(db: Session = Depends(get_db)):
    return {
        "outcomes": metrics.outcome_counts(db),
        "lots_without_vehicle": metrics.lots_without_vehicle(db),
        "conflicts": metrics.conflict_counts(db),
    }


@router.get("/lots/{external_lot_id}", response_model=schemas.LotDetail)
def get_lot(external_lot_id: str, source: Optional[str] = Query(None), db: Session = Depends(get_db)):
    lot = crud.get_lot(db, external_lot_id, source=source)
    if not lot:
        raise HTTPException(status_code=404, detail="Lot not found")
    return {"lot": lot, "events": events.events_for_lot(db, external_lot_id, source=lot.source)}
