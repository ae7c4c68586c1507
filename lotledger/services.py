# lotledger/services.py
"""Batch upsert of staging records into vehicles and lots.

Each staging record is reconciled inside its own savepoint. The outcome of a
row is a ``RowResult``; results are folded into an ``UpsertReport`` and only a
``RowStatus.FATAL`` result stops the batch.
"""
from typing import List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, aliased

from . import columns as c
from . import coerce, crud, vin
from .config import settings
from .models import SnapshotFile, StagingRecord, UpsertResult
from .results import RowResult, RowStatus, UpsertReport
from .utils import logger


def _link_vehicle(db: Session, rec: StagingRecord, payload, revision, warnings, result: RowResult):
    """Normalize and write the vehicle; returns (vehicle_id, issue)."""
    raw = rec.vehicle_id_raw
    if raw is None:
        result.vehicle_status = "missing"
        return None, None
    normalized = vin.normalize(raw, strict_check_digit=settings.VIN_STRICT_CHECK_DIGIT)
    if isinstance(normalized, vin.InvalidVin):
        result.vehicle_status = "rejected"
        result.conflicts.append("normalization_rejected")
        crud.log_conflict(
            db, "normalization_rejected", "lot_without_vehicle",
            snapshot_id=rec.snapshot_id, staging_id=rec.id, external_lot_id=rec.external_lot_id,
            vehicle_id_raw=raw, detail={"reason": normalized.reason},
        )
        return None, normalized.reason
    if normalized.check_digit_ok is False:
        warnings.append(f"{c.VIN}: check digit mismatch")

    status = crud.upsert_vehicle(
        db, normalized.value, raw, normalized.scheme, coerce.vehicle_values(payload, warnings), revision
    )
    result.vehicle_status = status
    if status == crud.COLLISION:
        result.conflicts.append("vehicle_id_collision")
        stored = crud.get_vehicle(db, normalized.value)
        crud.log_conflict(
            db, "vehicle_id_collision", "manual_review",
            snapshot_id=rec.snapshot_id, staging_id=rec.id, external_lot_id=rec.external_lot_id,
            vehicle_id_raw=raw, vehicle_id=normalized.value,
            detail={"stored_raw": stored.vehicle_id_raw if stored else None, "incoming_raw": raw},
        )
        return None, "vehicle_id_collision"
    if status == crud.STALE:
        crud.log_conflict(
            db, "stale_revision", "kept_existing",
            snapshot_id=rec.snapshot_id, staging_id=rec.id, external_lot_id=rec.external_lot_id,
            vehicle_id=normalized.value, detail={"entity": "vehicle"},
        )
    return normalized.value, None


def upsert_row(db: Session, rec: StagingRecord, source: str) -> RowResult:
    """Reconcile one staging record. Runs inside the caller's savepoint."""
    result = RowResult(staging_id=rec.id, external_lot_id=rec.external_lot_id, status=RowStatus.UNCHANGED)
    payload = rec.payload or {}
    warnings: List[str] = result.warnings
    revision = coerce.revision(payload.get(c.LAST_UPDATED), warnings)

    vehicle_id, issue = _link_vehicle(db, rec, payload, revision, warnings, result)

    data = coerce.lot_values(payload, warnings)
    data.update(
        vehicle_id=vehicle_id,
        vehicle_id_raw=rec.vehicle_id_raw,
        vehicle_id_issue=issue,
        source_revision_at=revision,
    )
    status = crud.upsert_lot(db, source, rec.external_lot_id, data)
    result.status = RowStatus(status)
    if status == crud.STALE:
        result.conflicts.append("stale_revision")
        crud.log_conflict(
            db, "stale_revision", "kept_existing",
            snapshot_id=rec.snapshot_id, staging_id=rec.id, external_lot_id=rec.external_lot_id,
            detail={"entity": "lot", "incoming_revision": revision.isoformat() if revision else None},
        )
    for w in warnings:
        logger.debug("field_warning staging_id=%s lot=%s %s", rec.id, rec.external_lot_id, w)
    return result


def _record(db: Session, rec: StagingRecord, result: RowResult) -> None:
    db.add(UpsertResult(
        staging_id=rec.id,
        snapshot_id=rec.snapshot_id,
        status=result.status.value,
        vehicle_status=result.vehicle_status,
        error=result.error,
        constraint_name=result.constraint_name,
        field_warnings=result.warnings or None,
    ))


def _first_line(exc) -> str:
    lines = str(getattr(exc, "orig", exc)).strip().splitlines()
    return lines[0] if lines else type(exc).__name__


def _process(db: Session, rec: StagingRecord, source: str) -> RowResult:
    try:
        with db.begin_nested():
            result = upsert_row(db, rec, source)
    except (IntegrityError, DataError) as e:
        name = crud.constraint_name(e)
        result = RowResult(
            staging_id=rec.id, external_lot_id=rec.external_lot_id, status=RowStatus.FAILED,
            error=_first_line(e), constraint_name=name,
            conflicts=["constraint_violation"],
        )
        crud.log_conflict(
            db, "constraint_violation", "row_skipped",
            snapshot_id=rec.snapshot_id, staging_id=rec.id, external_lot_id=rec.external_lot_id,
            vehicle_id_raw=rec.vehicle_id_raw, constraint_name=name, detail={"error": result.error},
        )
        logger.warning("row_failed staging_id=%s lot=%s constraint=%s", rec.id, rec.external_lot_id, name)
    except OperationalError as e:
        return RowResult(
            staging_id=rec.id, external_lot_id=rec.external_lot_id, status=RowStatus.FATAL,
            error=_first_line(e),
        )
    _record(db, rec, result)
    return result


def pending_ids(db: Session, snapshot_id: Optional[str] = None, limit: Optional[int] = None) -> List[int]:
    """Staging ids without an upsert result, oldest snapshot first, then row order."""
    q = (
        select(StagingRecord.id)
        .join(SnapshotFile, SnapshotFile.id == StagingRecord.snapshot_id)
        .outerjoin(UpsertResult, UpsertResult.staging_id == StagingRecord.id)
        .where(UpsertResult.staging_id.is_(None))
        .order_by(SnapshotFile.captured_at, SnapshotFile.ingested_at, StagingRecord.row_index)
    )
    if snapshot_id:
        q = q.where(StagingRecord.snapshot_id == snapshot_id)
    if limit:
        q = q.limit(limit)
    return list(db.execute(q).scalars())


def superseded_ids(db: Session, staging_ids: List[int]) -> Set[int]:
    """Staging ids followed by a later row for the same lot in the same snapshot.

    The last record for a lot wins, as in the diff; earlier ones are skipped.
    """
    later = aliased(StagingRecord)
    newer = (
        select(later.id)
        .where(
            later.snapshot_id == StagingRecord.snapshot_id,
            later.external_lot_id == StagingRecord.external_lot_id,
            later.row_index > StagingRecord.row_index,
        )
        .exists()
    )
    found: Set[int] = set()
    for start in range(0, len(staging_ids), 500):
        chunk = staging_ids[start:start + 500]
        found.update(db.execute(select(StagingRecord.id).where(StagingRecord.id.in_(chunk), newer)).scalars())
    return found


def _supersede(db: Session, rec: StagingRecord) -> RowResult:
    result = RowResult(staging_id=rec.id, external_lot_id=rec.external_lot_id, status=RowStatus.SUPERSEDED)
    logger.debug("row_superseded staging_id=%s lot=%s row=%s", rec.id, rec.external_lot_id, rec.row_index)
    _record(db, rec, result)
    return result


def upsert_batch(db: Session, snapshot_id: Optional[str] = None, limit: Optional[int] = None,
                 dry_run: bool = False, commit_every: Optional[int] = None) -> UpsertReport:
    """Reconcile pending staging records into vehicles and lots.

    Counts reach the report only once their chunk is committed (or, on a dry
    run, completed). A fatal row rolls back its chunk; those rows stay
    pending and are reported as ``rolled_back``.
    """
    commit_every = commit_every or settings.UPSERT_COMMIT_EVERY
    report = UpsertReport(snapshot_id=snapshot_id, dry_run=dry_run)
    ids = pending_ids(db, snapshot_id, limit)
    logger.info("upsert_started pending=%s snapshot=%s dry_run=%s", len(ids), snapshot_id, dry_run)

    for start in range(0, len(ids), commit_every):
        chunk = ids[start:start + commit_every]
        superseded = superseded_ids(db, chunk)
        rows = (
            db.query(StagingRecord, SnapshotFile.source)
            .join(SnapshotFile, SnapshotFile.id == StagingRecord.snapshot_id)
            .filter(StagingRecord.id.in_(chunk))
            .order_by(SnapshotFile.captured_at, SnapshotFile.ingested_at, StagingRecord.row_index)
            .all()
        )
        tally = UpsertReport(snapshot_id=snapshot_id, dry_run=dry_run)
        for rec, source in rows:
            if rec.id in superseded:
                result = _supersede(db, rec)
            else:
                result = _process(db, rec, source)
            if result.status == RowStatus.FATAL:
                db.rollback()
                report.fatal = result.error
                report.rolled_back = tally.processed
                logger.error("upsert_fatal staging_id=%s lot=%s error=%s rolled_back=%s",
                             rec.id, rec.external_lot_id, result.error, report.rolled_back)
                return report
            tally.add(result)
        if not dry_run:
            db.commit()
        report.merge(tally)
        if not dry_run:
            logger.info("upsert_progress processed=%s of %s", report.processed, len(ids))

    if dry_run:
        db.rollback()
    logger.info("upsert_finished %s dry_run=%s",
                " ".join(f"{k}={v}" for k, v in report.counts().items()), dry_run)
    return report


def upsert_pending(db: Session, snapshot_id: Optional[str] = None, limit: Optional[int] = None,
                   dry_run: bool = False) -> UpsertReport:
    """``upsert_batch`` with an ``etl_runs`` record around it."""
    run_id = crud.start_run(db, "upsert", dry_run=dry_run, snapshot_id=snapshot_id).id
    try:
        report = upsert_batch(db, snapshot_id=snapshot_id, limit=limit, dry_run=dry_run)
    except Exception as e:
        db.rollback()
        crud.finish_run(db, run_id, "failed", error_summary={"error": str(e), "type": type(e).__name__})
        raise
    if report.fatal:
        status = "failed"
    elif report.failed:
        status = "partial"
    else:
        status = "completed"
    crud.finish_run(
        db, run_id, status,
        counts=report.counts(),
        error_summary={"fatal": report.fatal, "skipped": report.skipped[:50]} if (report.fatal or report.skipped) else None,
    )
    return report
