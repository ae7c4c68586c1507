# lotledger/events.py
"""Append-only auction event ledger.

Events are only ever inserted; an insert for an ``event_key`` that already
exists is ignored. There are no update or delete helpers.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .db import dialect_insert
from .models import AuctionEvent, EventType

_CHUNK = 500


def _chunks(items: List, size: int = _CHUNK):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def append_events(db: Session, rows: List[Dict[str, Any]]) -> int:
    """Insert event rows not yet in the ledger; returns how many were new."""
    if not rows:
        return 0
    existing = set()
    keys = [r["event_key"] for r in rows]
    for chunk in _chunks(keys):
        existing.update(
            key for (key,) in db.query(AuctionEvent.event_key).filter(AuctionEvent.event_key.in_(chunk))
        )
    new_rows = [r for r in rows if r["event_key"] not in existing]
    table = AuctionEvent.__table__
    for chunk in _chunks(new_rows):
        stmt = dialect_insert(db, table).on_conflict_do_nothing(index_elements=["event_key"])
        db.execute(stmt, chunk)
    return len(new_rows)


def events_for_lot(db: Session, external_lot_id: str, source: Optional[str] = None) -> List[AuctionEvent]:
    """Per-lot timeline, including relists that name the lot as predecessor."""
    q = db.query(AuctionEvent).filter(or_(
        AuctionEvent.external_lot_id == external_lot_id,
        AuctionEvent.previous_external_lot_id == external_lot_id,
    ))
    if source:
        q = q.filter(AuctionEvent.source == source)
    return q.order_by(AuctionEvent.occurred_at, AuctionEvent.sequence, AuctionEvent.id).all()


def events_by_type(db: Session, event_type: EventType, limit: int = 100) -> List[AuctionEvent]:
    return (
        db.query(AuctionEvent)
        .filter(AuctionEvent.event_type == event_type)
        .order_by(AuctionEvent.occurred_at.desc(), AuctionEvent.sequence)
        .limit(limit)
        .all()
    )


def counts_by_type(db: Session) -> Dict[str, int]:
    rows = db.query(AuctionEvent.event_type, func.count(AuctionEvent.id)).group_by(AuctionEvent.event_type).all()
    return {(t.value if isinstance(t, EventType) else t): n for t, n in rows}


def relist_successors(db: Session, source: str, external_lot_ids: Iterable[str]) -> Dict[str, AuctionEvent]:
    """Earliest relisted event naming each lot as the previous attempt."""
    ids = list(external_lot_ids)
    found: Dict[str, AuctionEvent] = {}
    for chunk in _chunks(ids):
        rows = (
            db.query(AuctionEvent)
            .filter(
                AuctionEvent.source == source,
                AuctionEvent.event_type == EventType.RELISTED,
                AuctionEvent.previous_external_lot_id.in_(chunk),
            )
            .order_by(AuctionEvent.occurred_at, AuctionEvent.sequence)
            .all()
        )
        for ev in rows:
            found.setdefault(ev.previous_external_lot_id, ev)
    return found


def unrelisted_disappearances(db: Session, source: str, vehicle_ids: Iterable[str],
                              before: datetime) -> List[AuctionEvent]:
    """Disappearances recorded before ``before`` that no later sighting explains.

    A disappearance is dropped when, before the cutoff, the same lot appeared
    again or a relisted event already names it as the previous lot.
    """
    vehicle_ids = [v for v in set(vehicle_ids) if v]
    if not vehicle_ids:
        return []
    gone: List[AuctionEvent] = []
    for chunk in _chunks(vehicle_ids):
        gone.extend(
            db.query(AuctionEvent)
            .filter(
                AuctionEvent.source == source,
                AuctionEvent.event_type == EventType.DISAPPEARED,
                AuctionEvent.vehicle_id.in_(chunk),
                AuctionEvent.occurred_at < before,
            )
            .all()
        )
    if not gone:
        return []
    lot_ids = list({ev.external_lot_id for ev in gone})
    relisted, reappeared = set(), {}
    for chunk in _chunks(lot_ids):
        relisted.update(
            lot for (lot,) in db.query(AuctionEvent.previous_external_lot_id).filter(
                AuctionEvent.source == source,
                AuctionEvent.event_type == EventType.RELISTED,
                AuctionEvent.previous_external_lot_id.in_(chunk),
                AuctionEvent.occurred_at < before,
            )
        )
        for lot, seen in db.query(AuctionEvent.external_lot_id, func.max(AuctionEvent.occurred_at)).filter(
            AuctionEvent.source == source,
            AuctionEvent.event_type == EventType.APPEARED,
            AuctionEvent.external_lot_id.in_(chunk),
            AuctionEvent.occurred_at < before,
        ).group_by(AuctionEvent.external_lot_id):
            reappeared[lot] = seen

    latest: Dict[str, AuctionEvent] = {}
    for ev in gone:
        if ev.external_lot_id in relisted:
            continue
        seen = reappeared.get(ev.external_lot_id)
        if seen is not None and seen > ev.occurred_at:
            continue
        current = latest.get(ev.external_lot_id)
        if current is None or ev.occurred_at > current.occurred_at:
            latest[ev.external_lot_id] = ev
    return sorted(latest.values(), key=lambda ev: (ev.occurred_at, ev.external_lot_id))


def last_disappearance(db: Session, source: str, external_lot_ids: Iterable[str]) -> Dict[str, AuctionEvent]:
    """Latest disappeared event per lot."""
    found: Dict[str, AuctionEvent] = {}
    for chunk in _chunks(list(external_lot_ids)):
        rows = (
            db.query(AuctionEvent)
            .filter(
                AuctionEvent.source == source,
                AuctionEvent.event_type == EventType.DISAPPEARED,
                AuctionEvent.external_lot_id.in_(chunk),
            )
            .order_by(AuctionEvent.occurred_at, AuctionEvent.sequence)
            .all()
        )
        for ev in rows:
            found[ev.external_lot_id] = ev
    return found


def last_appearance(db: Session, source: str, external_lot_ids: Iterable[str]) -> Dict[str, datetime]:
    """Latest appeared event time per lot."""
    found: Dict[str, datetime] = {}
    for chunk in _chunks(list(external_lot_ids)):
        for lot, seen in db.query(AuctionEvent.external_lot_id, func.max(AuctionEvent.occurred_at)).filter(
            AuctionEvent.source == source,
            AuctionEvent.event_type == EventType.APPEARED,
            AuctionEvent.external_lot_id.in_(chunk),
        ).group_by(AuctionEvent.external_lot_id):
            found[lot] = seen
    return found
