# lotledger/diff.py
"""Snapshot diff engine.

``compute_diff`` is pure: given the staged lots of two snapshots (and any
earlier, still unexplained disappearances) it returns the typed events for
the pair in a deterministic order. ``run_diff`` loads the inputs, writes the
events and the ``diff_runs`` marker in one transaction.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from . import columns as c
from . import coerce, crud, events, vin
from .config import settings
from .models import DiffRun, EventType, SnapshotFile, StagingRecord
from .results import LedgerError
from .utils import logger, sha256_hex

# order of event types within a pair
TYPE_ORDER = (EventType.DISAPPEARED, EventType.APPEARED, EventType.UPDATED, EventType.RELISTED)


@dataclass(frozen=True)
class LotView:
    """The parts of a staged lot the diff looks at."""
    external_lot_id: str
    vehicle_id: Optional[str]
    auction_at: Optional[datetime]
    payload: Dict[str, Any]


@dataclass(frozen=True)
class RelistCandidate:
    external_lot_id: str
    vehicle_id: str
    auction_at: Optional[datetime]
    disappeared_at: Optional[datetime] = None


@dataclass
class DiffEvent:
    event_type: EventType
    external_lot_id: str
    vehicle_id: Optional[str]
    payload: Dict[str, Any]
    previous_external_lot_id: Optional[str] = None
    sequence: int = 0

    def key(self):
        return (self.event_type.value, self.external_lot_id, self.previous_external_lot_id)


@dataclass
class DiffReport:
    previous_snapshot_id: Optional[str] = None
    current_snapshot_id: Optional[str] = None
    events: List[DiffEvent] = field(default_factory=list)
    inserted: int = 0
    skipped: bool = False
    dry_run: bool = False

    def counts(self) -> Dict[str, int]:
        counts = {t.value: 0 for t in TYPE_ORDER}
        for ev in self.events:
            counts[ev.event_type.value] += 1
        return counts


def view(rec) -> LotView:
    """Build a ``LotView`` from anything with external_lot_id, vehicle_id_raw and payload."""
    payload = rec.payload or {}
    normalized = None
    if rec.vehicle_id_raw:
        normalized = vin.normalize(rec.vehicle_id_raw, strict_check_digit=settings.VIN_STRICT_CHECK_DIGIT)
    vehicle_id = normalized.value if isinstance(normalized, vin.NormalizedVin) else None
    auction_at = coerce.sale_datetime(payload.get(c.SALE_DATE), payload.get(c.SALE_TIME),
                                      payload.get(c.TIME_ZONE), [])
    return LotView(rec.external_lot_id, vehicle_id, auction_at, payload)


def index(records: Iterable) -> Dict[str, LotView]:
    """Key staged records by lot id; the last record for a lot wins."""
    return {v.external_lot_id: v for v in (view(r) for r in records)}


def field_changes(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    changes = {}
    for name in sorted(set(before) | set(after)):
        if name in c.DIFF_IGNORED:
            continue
        old, new = before.get(name), after.get(name)
        if old != new:
            changes[name] = {"before": old, "after": new}
    return changes


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _presence_payload(lot: LotView) -> Dict[str, Any]:
    p = lot.payload
    return {
        "auction_datetime": _iso(lot.auction_at),
        "sale_status": p.get(c.SALE_STATUS),
        "current_bid": p.get(c.CURRENT_BID),
        "buy_it_now": p.get(c.BUY_IT_NOW),
        "vehicle_id_raw": p.get(c.VIN),
    }


def compute_diff(previous: Dict[str, LotView], current: Dict[str, LotView],
                 prior_candidates: Iterable[RelistCandidate] = ()) -> List[DiffEvent]:
    """Events that turn ``previous`` into ``current``, sorted and sequenced."""
    out: List[DiffEvent] = []
    prev_ids, curr_ids = set(previous), set(current)
    appeared, disappeared = sorted(curr_ids - prev_ids), sorted(prev_ids - curr_ids)

    for lot_id in disappeared:
        lot = previous[lot_id]
        out.append(DiffEvent(EventType.DISAPPEARED, lot_id, lot.vehicle_id, _presence_payload(lot)))
    for lot_id in appeared:
        lot = current[lot_id]
        out.append(DiffEvent(EventType.APPEARED, lot_id, lot.vehicle_id, _presence_payload(lot)))
    for lot_id in sorted(prev_ids & curr_ids):
        changes = field_changes(previous[lot_id].payload, current[lot_id].payload)
        if changes:
            out.append(DiffEvent(EventType.UPDATED, lot_id, current[lot_id].vehicle_id, {"changes": changes}))

    # relist candidates per vehicle: lots gone in this pair plus earlier unexplained disappearances
    candidates = defaultdict(dict)
    for cand in prior_candidates:
        if cand.external_lot_id not in curr_ids and cand.external_lot_id not in prev_ids:
            candidates[cand.vehicle_id][cand.external_lot_id] = cand
    for lot_id in disappeared:
        lot = previous[lot_id]
        if lot.vehicle_id:
            candidates[lot.vehicle_id][lot_id] = RelistCandidate(lot_id, lot.vehicle_id, lot.auction_at)

    used = set()
    for lot_id in appeared:
        lot = current[lot_id]
        if not lot.vehicle_id or lot.auction_at is None:
            continue
        options = [
            cand for cand in candidates.get(lot.vehicle_id, {}).values()
            if cand.external_lot_id not in used and cand.auction_at is not None and cand.auction_at < lot.auction_at
        ]
        if not options:
            continue
        chosen = max(options, key=lambda cand: (cand.auction_at, cand.external_lot_id))
        used.add(chosen.external_lot_id)
        out.append(DiffEvent(
            EventType.RELISTED, lot_id, lot.vehicle_id,
            {"previous_auction_datetime": _iso(chosen.auction_at), "auction_datetime": _iso(lot.auction_at)},
            previous_external_lot_id=chosen.external_lot_id,
        ))

    rank = {t: i for i, t in enumerate(TYPE_ORDER)}
    out.sort(key=lambda ev: (rank[ev.event_type], ev.external_lot_id, ev.previous_external_lot_id or ""))
    for seq, ev in enumerate(out, start=1):
        ev.sequence = seq
    return out


def event_key(previous_id: str, current_id: str, ev: DiffEvent) -> str:
    raw = "|".join([previous_id, current_id, ev.event_type.value, ev.external_lot_id,
                    ev.previous_external_lot_id or ""])
    return sha256_hex(raw.encode("utf-8"))


def _load(db: Session, snapshot_id: str) -> Dict[str, LotView]:
    records = (
        db.query(StagingRecord)
        .filter(StagingRecord.snapshot_id == snapshot_id)
        .order_by(StagingRecord.row_index)
        .yield_per(5000)
    )
    return index(records)


def _prior_candidates(db: Session, source: str, vehicle_ids, before: datetime) -> List[RelistCandidate]:
    out = []
    for ev in events.unrelisted_disappearances(db, source, vehicle_ids, before):
        auction_raw = (ev.payload or {}).get("auction_datetime")
        auction_at = datetime.fromisoformat(auction_raw) if auction_raw else None
        out.append(RelistCandidate(ev.external_lot_id, ev.vehicle_id, auction_at, ev.occurred_at))
    return out


def run_diff(db: Session, previous_ref: str, current_ref: str, dry_run: bool = False,
             force: bool = False) -> DiffReport:
    """Diff two snapshots and append the events. A finished pair is a no-op unless forced."""
    prev = crud.resolve_snapshot(db, previous_ref)
    curr = crud.resolve_snapshot(db, current_ref)
    if prev.id == curr.id:
        raise LedgerError("cannot diff a snapshot against itself")
    if prev.source != curr.source:
        raise LedgerError(f"snapshots belong to different sources ({prev.source} vs {curr.source})")
    report = DiffReport(prev.id, curr.id, dry_run=dry_run)

    done = db.query(DiffRun).filter(
        DiffRun.previous_snapshot_id == prev.id, DiffRun.current_snapshot_id == curr.id
    ).first()
    if done is not None and not force:
        report.skipped = True
        logger.info("diff_skipped previous=%s current=%s reason=already_diffed", prev.id, curr.id)
        return report

    previous, current = _load(db, prev.id), _load(db, curr.id)
    appeared_vehicles = {current[k].vehicle_id for k in set(current) - set(previous)}
    prior = _prior_candidates(db, curr.source, appeared_vehicles, curr.captured_at)
    report.events = compute_diff(previous, current, prior)

    if dry_run:
        logger.info("diff_preview previous=%s current=%s %s", prev.id, curr.id,
                    " ".join(f"{k}={v}" for k, v in report.counts().items()))
        return report

    rows = [{
        "event_key": event_key(prev.id, curr.id, ev),
        "event_type": ev.event_type,
        "source": curr.source,
        "external_lot_id": ev.external_lot_id,
        "vehicle_id": ev.vehicle_id,
        "previous_external_lot_id": ev.previous_external_lot_id,
        "occurred_at": curr.captured_at,
        "sequence": ev.sequence,
        "snapshot_id": curr.id,
        "previous_snapshot_id": prev.id,
        "payload": ev.payload,
    } for ev in report.events]
    try:
        report.inserted = events.append_events(db, rows)
        if done is None:
            db.add(DiffRun(previous_snapshot_id=prev.id, current_snapshot_id=curr.id,
                           event_counts=report.counts()))
        db.commit()
    except BaseException:
        db.rollback()
        raise
    logger.info("diff_finished previous=%s current=%s inserted=%s %s", prev.id, curr.id, report.inserted,
                " ".join(f"{k}={v}" for k, v in report.counts().items()))
    return report


def undiffed_pairs(db: Session, source: Optional[str] = None):
    """Consecutive snapshot pairs without a diff run, oldest first."""
    q = db.query(SnapshotFile)
    if source:
        q = q.filter(SnapshotFile.source == source)
    snaps = q.order_by(SnapshotFile.source, SnapshotFile.captured_at, SnapshotFile.ingested_at).all()
    done = {(r.previous_snapshot_id, r.current_snapshot_id) for r in db.query(DiffRun).all()}
    pairs = []
    for prev, curr in zip(snaps, snaps[1:]):
        if prev.source == curr.source and (prev.id, curr.id) not in done:
            pairs.append((prev, curr))
    pairs.sort(key=lambda pair: (pair[1].captured_at, pair[1].ingested_at))
    return pairs


def run_auto(db: Session, source: Optional[str] = None, dry_run: bool = False) -> List[DiffReport]:
    """Catch up every undiffed consecutive pair."""
    reports = []
    for prev, curr in undiffed_pairs(db, source):
        reports.append(run_diff(db, prev.id, curr.id, dry_run=dry_run))
    if not reports:
        logger.info("diff_auto nothing to do source=%s", source)
    return reports


def run_recorded(db: Session, previous_ref: Optional[str] = None, current_ref: Optional[str] = None,
                 auto: bool = False, source: Optional[str] = None, dry_run: bool = False,
                 force: bool = False) -> List[DiffReport]:
    """``run_auto`` or ``run_diff`` with an ``etl_runs`` record around it."""
    run_id = crud.start_run(db, "diff", dry_run=dry_run).id
    try:
        if auto:
            reports = run_auto(db, source=source, dry_run=dry_run)
        else:
            reports = [run_diff(db, previous_ref, current_ref, dry_run=dry_run, force=force)]
    except Exception as e:
        db.rollback()
        crud.finish_run(db, run_id, "failed", error_summary={"error": str(e), "type": type(e).__name__})
        raise
    totals: Dict[str, int] = {t.value: 0 for t in TYPE_ORDER}
    for r in reports:
        for k, v in r.counts().items():
            totals[k] += v
    totals["pairs"] = len(reports)
    totals["inserted"] = sum(r.inserted for r in reports)
    status = "skipped" if all(r.skipped for r in reports) else "completed"
    refs = {}
    if len(reports) == 1:
        refs = {"previous_snapshot_id": reports[0].previous_snapshot_id,
                "snapshot_id": reports[0].current_snapshot_id}
    crud.finish_run(db, run_id, status, counts=totals, **refs)
    return reports
