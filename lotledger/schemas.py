# lotledger/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .models import EventType, OutcomeState


class SnapshotStats(BaseModel):
    snapshot_id: str
    source: str
    content_hash: str
    captured_at: datetime
    declared_row_count: int
    rows_admitted: int
    keys_extracted: int
    parse_errors: int
    missing_lot_id: int
    missing_vehicle_id: int
    unknown_rate: float
    column_changes: Optional[Dict[str, Any]] = None


class OutcomeCount(BaseModel):
    outcome: OutcomeState
    confidence: Optional[float] = None
    count: int


class ConflictCount(BaseModel):
    kind: str
    resolution: str
    count: int


class OutcomeStats(BaseModel):
    outcomes: List[OutcomeCount]
    lots_without_vehicle: Dict[str, int]
    conflicts: List[ConflictCount]


class EventOut(BaseModel):
    event_type: EventType
    external_lot_id: str
    previous_external_lot_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    occurred_at: datetime
    sequence: int
    snapshot_id: str
    payload: Dict[str, Any]

    class Config:
        from_attributes = True


class LotOut(BaseModel):
    id: int
    source: str
    external_lot_id: str
    vehicle_id: Optional[str] = None
    vehicle_id_raw: Optional[str] = None
    vehicle_id_issue: Optional[str] = None
    yard_name: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    auction_datetime: Optional[datetime] = None
    current_bid: Optional[Decimal] = None
    buy_it_now_price: Optional[Decimal] = None
    status: Optional[str] = None
    outcome: OutcomeState
    outcome_confidence: Optional[float] = None
    outcome_determined_at: Optional[datetime] = None
    outcome_method: Optional[str] = None
    outcome_notes: Optional[str] = None
    relist_count: int
    previous_lot_id: Optional[int] = None
    source_revision_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LotDetail(BaseModel):
    lot: LotOut
    events: List[EventOut]
