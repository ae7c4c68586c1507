# lotledger/resolver.py
"""Outcome resolution pass over lots with ledger evidence."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import crud, events, outcomes
from .models import AuctionEvent, EventType, Lot, OutcomeDetermination
from .utils import as_utc, logger, utcnow


@dataclass
class ResolveReport:
    as_of: Optional[datetime] = None
    evaluated: int = 0
    updated: List[Dict[str, Any]] = field(default_factory=list)
    still_pending: List[str] = field(default_factory=list)
    relinked: List[Dict[str, str]] = field(default_factory=list)
    dry_run: bool = False

    def counts(self) -> Dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "updated": len(self.updated),
            "still_pending": len(self.still_pending),
            "relinked": len(self.relinked),
        }


def _candidate_keys(db: Session, lot: Optional[str]):
    q = db.query(AuctionEvent.source, AuctionEvent.external_lot_id).filter(
        AuctionEvent.event_type == EventType.DISAPPEARED)
    r = db.query(AuctionEvent.source, AuctionEvent.previous_external_lot_id).filter(
        AuctionEvent.event_type == EventType.RELISTED)
    if lot:
        q = q.filter(AuctionEvent.external_lot_id == lot)
        r = r.filter(AuctionEvent.previous_external_lot_id == lot)
    return set(q.distinct().all()) | set(r.distinct().all())


def _load_lots(db: Session, keys) -> List[Lot]:
    by_source: Dict[str, List[str]] = {}
    for source, lot_id in keys:
        by_source.setdefault(source, []).append(lot_id)
    lots: List[Lot] = []
    for source, lot_ids in by_source.items():
        for start in range(0, len(lot_ids), 500):
            chunk = lot_ids[start:start + 500]
            lots.extend(db.query(Lot).filter(Lot.source == source, Lot.external_lot_id.in_(chunk)).all())
    # stable order: auction time, undated lots last, then lot id
    lots.sort(key=lambda row: (row.auction_datetime is None, row.auction_datetime or datetime.min, row.external_lot_id))
    return lots


def _evidence(lot: Lot, gone, seen, successors) -> outcomes.Evidence:
    disappeared = gone.get(lot.external_lot_id)
    appeared_at = seen.get(lot.external_lot_id)
    successor = successors.get(lot.external_lot_id)
    return outcomes.Evidence(
        auction_datetime=lot.auction_datetime,
        disappeared_at=disappeared.occurred_at if disappeared else None,
        reappeared=bool(disappeared and appeared_at and appeared_at > disappeared.occurred_at),
        relisted_as=successor.external_lot_id if successor else None,
        buy_it_now_price=lot.buy_it_now_price,
        last_status=lot.status,
    )


def _relink(db: Session, lot: Lot, successor_event, report: ResolveReport) -> None:
    successor = crud.get_lot(db, successor_event.external_lot_id, source=lot.source)
    if successor is None or successor.previous_lot_id is not None or successor.id == lot.id:
        return
    successor.previous_lot_id = lot.id
    successor.relist_count = (lot.relist_count or 0) + 1
    report.relinked.append({"previous": lot.external_lot_id, "successor": successor.external_lot_id})
    logger.info("lot_relinked previous=%s successor=%s relist_count=%s",
                lot.external_lot_id, successor.external_lot_id, successor.relist_count)


def resolve(db: Session, as_of: Optional[datetime] = None, config: Optional[outcomes.ResolverConfig] = None,
            lot: Optional[str] = None, dry_run: bool = False) -> ResolveReport:
    """Evaluate every lot with disappearance or relist evidence.

    Lots are processed by (auction_datetime, external_lot_id). Each change
    updates the lot's outcome columns and appends an ``outcome_determinations``
    row; the pass commits once at the end, or rolls back on ``dry_run``.
    """
    as_of = as_utc(as_of) or utcnow()
    config = config or outcomes.ResolverConfig.from_settings()
    report = ResolveReport(as_of=as_of, dry_run=dry_run)

    lots = _load_lots(db, _candidate_keys(db, lot))
    by_source: Dict[str, List[str]] = {}
    for row in lots:
        by_source.setdefault(row.source, []).append(row.external_lot_id)
    gone, seen, successors = {}, {}, {}
    for source, lot_ids in by_source.items():
        gone.update(events.last_disappearance(db, source, lot_ids))
        seen.update(events.last_appearance(db, source, lot_ids))
        successors.update(events.relist_successors(db, source, lot_ids))

    try:
        for row in lots:
            report.evaluated += 1
            current = outcomes.Current(row.outcome or outcomes.OutcomeState.UNKNOWN, row.outcome_confidence)
            evidence = _evidence(row, gone, seen, successors)
            decision = outcomes.decide(current, evidence, config, as_of)
            if decision is not None:
                db.add(OutcomeDetermination(
                    lot_id=row.id,
                    external_lot_id=row.external_lot_id,
                    previous_outcome=current.state.value,
                    outcome=decision.outcome.value,
                    confidence=decision.confidence,
                    method=decision.method,
                    notes=decision.notes,
                    as_of=as_of,
                ))
                row.outcome = decision.outcome
                row.outcome_confidence = decision.confidence
                row.outcome_determined_at = as_of
                row.outcome_method = decision.method
                row.outcome_notes = decision.notes
                report.updated.append({
                    "external_lot_id": row.external_lot_id,
                    "from": current.state.value,
                    "to": decision.outcome.value,
                    "confidence": decision.confidence,
                    "method": decision.method,
                })
                logger.info("outcome_set lot=%s from=%s to=%s confidence=%.2f method=%s",
                            row.external_lot_id, current.state.value, decision.outcome.value,
                            decision.confidence, decision.method)
            elif outcomes.is_pending(current, evidence, config):
                report.still_pending.append(row.external_lot_id)
            if evidence.relisted_as:
                _relink(db, row, successors[row.external_lot_id], report)
        if dry_run:
            db.rollback()
        else:
            db.commit()
    except BaseException:
        db.rollback()
        raise

    logger.info("resolve_finished as_of=%s %s dry_run=%s", as_of.isoformat(),
                " ".join(f"{k}={v}" for k, v in report.counts().items()), dry_run)
    return report


def run_resolve(db: Session, as_of: Optional[datetime] = None, config: Optional[outcomes.ResolverConfig] = None,
                lot: Optional[str] = None, dry_run: bool = False) -> ResolveReport:
    """``resolve`` with an ``etl_runs`` record around it."""
    run_id = crud.start_run(db, "resolve", dry_run=dry_run).id
    try:
        report = resolve(db, as_of=as_of, config=config, lot=lot, dry_run=dry_run)
    except Exception as e:
        db.rollback()
        crud.finish_run(db, run_id, "failed", error_summary={"error": str(e), "type": type(e).__name__})
        raise
    crud.finish_run(db, run_id, "completed", counts=report.counts())
    return report
