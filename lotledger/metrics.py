# lotledger/metrics.py
"""Monitoring views: the numbers every run is judged by."""
from typing import Any, Dict, List

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from . import events
from .models import ConflictLogEntry, EtlRun, Lot, RawRow, SnapshotFile, StagingRecord


def snapshot_stats(db: Session, limit: int = 20) -> List[Dict[str, Any]]:
    """Declared vs admitted rows, parse errors and unknown-key rate per snapshot."""
    snaps = db.query(SnapshotFile).order_by(SnapshotFile.captured_at.desc()).limit(limit).all()
    if not snaps:
        return []
    ids = [s.id for s in snaps]
    raw = dict(
        (sid, (total, errors)) for sid, total, errors in db.query(
            RawRow.snapshot_id,
            func.count(RawRow.id),
            func.sum(case((RawRow.parse_error.isnot(None), 1), else_=0)),
        ).filter(RawRow.snapshot_id.in_(ids)).group_by(RawRow.snapshot_id)
    )
    staged = dict(
        (sid, (total, missing)) for sid, total, missing in db.query(
            StagingRecord.snapshot_id,
            func.count(StagingRecord.id),
            func.sum(case((StagingRecord.vehicle_id_raw.is_(None), 1), else_=0)),
        ).filter(StagingRecord.snapshot_id.in_(ids)).group_by(StagingRecord.snapshot_id)
    )
    out = []
    for s in snaps:
        rows, parse_errors = raw.get(s.id, (0, 0))
        keys, missing = staged.get(s.id, (0, 0))
        missing = missing or 0
        out.append({
            "snapshot_id": s.id,
            "source": s.source,
            "content_hash": s.content_hash,
            "captured_at": s.captured_at,
            "declared_row_count": s.declared_row_count,
            "rows_admitted": rows,
            "keys_extracted": keys,
            "parse_errors": parse_errors or 0,
            "missing_lot_id": rows - (parse_errors or 0) - keys,
            "missing_vehicle_id": missing,
            "unknown_rate": round(100.0 * missing / keys, 2) if keys else 0.0,
            "column_changes": s.column_changes,
        })
    return out


def event_counts(db: Session) -> Dict[str, int]:
    return events.counts_by_type(db)


def outcome_counts(db: Session) -> List[Dict[str, Any]]:
    """Lots per (outcome, confidence)."""
    rows = (
        db.query(Lot.outcome, Lot.outcome_confidence, func.count(Lot.id))
        .group_by(Lot.outcome, Lot.outcome_confidence)
        .all()
    )
    out = [
        {"outcome": getattr(outcome, "value", outcome), "confidence": confidence, "count": n}
        for outcome, confidence, n in rows
    ]
    return sorted(out, key=lambda r: (r["outcome"], r["confidence"] is None, r["confidence"] or 0.0))


def lots_without_vehicle(db: Session) -> Dict[str, int]:
    rows = (
        db.query(func.coalesce(Lot.vehicle_id_issue, "missing"), func.count(Lot.id))
        .filter(Lot.vehicle_id.is_(None))
        .group_by(func.coalesce(Lot.vehicle_id_issue, "missing"))
        .all()
    )
    return {issue: n for issue, n in rows}


def conflict_counts(db: Session) -> List[Dict[str, Any]]:
    rows = (
        db.query(ConflictLogEntry.kind, ConflictLogEntry.resolution, func.count(ConflictLogEntry.id))
        .group_by(ConflictLogEntry.kind, ConflictLogEntry.resolution)
        .order_by(ConflictLogEntry.kind, ConflictLogEntry.resolution)
        .all()
    )
    return [{"kind": k, "resolution": r, "count": n} for k, r, n in rows]


def recent_runs(db: Session, limit: int = 10) -> List[EtlRun]:
    return db.query(EtlRun).order_by(EtlRun.started_at.desc()).limit(limit).all()


def summary(db: Session) -> Dict[str, Any]:
    return {
        "snapshots": snapshot_stats(db, limit=5),
        "events": event_counts(db),
        "outcomes": outcome_counts(db),
        "lots_without_vehicle": lots_without_vehicle(db),
        "conflicts": conflict_counts(db),
    }
