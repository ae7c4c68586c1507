# lotledger/crud.py
"""Statement-level helpers for vehicles, lots, audit tables and run records.

The two upserts are monotonic: a stored row is only overwritten when the
incoming ``source_revision_at`` is strictly newer, or when the stored row has
no revision yet. The guard lives in the ``ON CONFLICT ... DO UPDATE ... WHERE``
clause so it holds even when two passes overlap.
"""
import re
from typing import Any, Dict, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .db import dialect_insert
from .models import ConflictLogEntry, EtlRun, Lot, SnapshotFile, Vehicle
from .results import SnapshotNotFound
from .utils import logger, utcnow

INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"
STALE = "stale"
COLLISION = "collision"

MIN_HASH_PREFIX = 8

_PG_CONSTRAINT = re.compile(r'constraint "([^"]+)"')
_SQLITE_CHECK = re.compile(r"CHECK constraint failed: (\w+)")
_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: ([\w.]+(?:, [\w.]+)*)")
_SQLITE_NOT_NULL = re.compile(r"NOT NULL constraint failed: ([\w.]+)")


def _classify(stored_revision, incoming_revision) -> str:
    if stored_revision is None:
        return UPDATED
    if incoming_revision is None or incoming_revision < stored_revision:
        return STALE
    if incoming_revision == stored_revision:
        return UNCHANGED
    return UPDATED


def _monotonic_upsert(db: Session, table, index_elements, data: Dict[str, Any]):
    stmt = dialect_insert(db, table).values(**data)
    excluded = {k: stmt.excluded[k] for k in data if k not in index_elements}
    excluded["updated_at"] = utcnow()
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_=excluded,
        where=or_(
            table.c.source_revision_at.is_(None),
            stmt.excluded.source_revision_at > table.c.source_revision_at,
        ),
    )
    db.execute(stmt)


def upsert_vehicle(db: Session, vehicle_id: str, raw: Optional[str], scheme: str,
                   values: Dict[str, Any], revision) -> str:
    """Write a vehicle; returns inserted/updated/unchanged/stale/collision.

    A collision is a stored vehicle whose raw identifier differs from the
    incoming one although both normalize to ``vehicle_id``. The stored row is
    left untouched in that case.
    """
    stored = db.execute(
        select(Vehicle.vehicle_id_raw, Vehicle.source_revision_at).where(Vehicle.vehicle_id == vehicle_id)
    ).first()
    if stored is not None and stored.vehicle_id_raw and raw \
            and stored.vehicle_id_raw.strip().upper() != raw.strip().upper():
        return COLLISION
    data = dict(values, vehicle_id=vehicle_id, vehicle_id_raw=raw, id_scheme=scheme,
                source_revision_at=revision)
    _monotonic_upsert(db, Vehicle.__table__, ["vehicle_id"], data)
    if stored is None:
        return INSERTED
    return _classify(stored.source_revision_at, revision)


def upsert_lot(db: Session, source: str, external_lot_id: str, data: Dict[str, Any]) -> str:
    """Write a lot keyed by (source, external_lot_id); returns the write status.

    Outcome and relist columns are never part of ``data``; only the resolver
    writes them.
    """
    stored = db.execute(
        select(Lot.source_revision_at).where(Lot.source == source, Lot.external_lot_id == external_lot_id)
    ).first()
    row = dict(data, source=source, external_lot_id=external_lot_id)
    _monotonic_upsert(db, Lot.__table__, ["source", "external_lot_id"], row)
    if stored is None:
        return INSERTED
    return _classify(stored.source_revision_at, data.get("source_revision_at"))


def get_lot(db: Session, external_lot_id: str, source: Optional[str] = None):
    q = db.query(Lot).filter(Lot.external_lot_id == external_lot_id)
    if source:
        q = q.filter(Lot.source == source)
    return q.order_by(Lot.id).first()


def get_vehicle(db: Session, vehicle_id: str):
    return db.get(Vehicle, vehicle_id)


def log_conflict(db: Session, kind: str, resolution: str, **fields) -> ConflictLogEntry:
    entry = ConflictLogEntry(kind=kind, resolution=resolution, **fields)
    db.add(entry)
    logger.warning(
        "conflict kind=%s resolution=%s staging_id=%s lot=%s vehicle=%s constraint=%s",
        kind, resolution, fields.get("staging_id"), fields.get("external_lot_id"),
        fields.get("vehicle_id") or fields.get("vehicle_id_raw"), fields.get("constraint_name"),
    )
    return entry


def constraint_name(exc) -> Optional[str]:
    """Name of the violated constraint behind a DBAPI error, when known."""
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    name = getattr(diag, "constraint_name", None)
    if name:
        return name
    message = str(orig if orig is not None else exc)
    for pattern in (_PG_CONSTRAINT, _SQLITE_CHECK, _SQLITE_UNIQUE, _SQLITE_NOT_NULL):
        m = pattern.search(message)
        if m:
            return m.group(1)
    return None


def resolve_snapshot(db: Session, ref: str) -> SnapshotFile:
    """Find a snapshot by id or by a content-hash prefix of 8+ characters."""
    ref = (ref or "").strip()
    snap = db.get(SnapshotFile, ref) if ref else None
    if snap is not None:
        return snap
    if len(ref) >= MIN_HASH_PREFIX:
        matches = (
            db.query(SnapshotFile)
            .filter(SnapshotFile.content_hash.like(f"{ref.lower()}%"))
            .limit(2)
            .all()
        )
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise SnapshotNotFound(f"snapshot ref {ref!r} is ambiguous")
    raise SnapshotNotFound(f"no snapshot matches {ref!r}")


def previous_snapshot(db: Session, snap: SnapshotFile) -> Optional[SnapshotFile]:
    """The snapshot of the same source captured immediately before ``snap``."""
    return (
        db.query(SnapshotFile)
        .filter(
            SnapshotFile.source == snap.source,
            SnapshotFile.id != snap.id,
            or_(
                SnapshotFile.captured_at < snap.captured_at,
                (SnapshotFile.captured_at == snap.captured_at) & (SnapshotFile.ingested_at < snap.ingested_at),
            ),
        )
        .order_by(SnapshotFile.captured_at.desc(), SnapshotFile.ingested_at.desc())
        .first()
    )


def start_run(db: Session, stage: str, dry_run: bool = False, **refs) -> EtlRun:
    run = EtlRun(stage=stage, status="running", dry_run=dry_run, started_at=utcnow(), **refs)
    db.add(run)
    db.commit()
    return run


def finish_run(db: Session, run_id: str, status: str, counts: Optional[Dict[str, Any]] = None,
               error_summary: Optional[Dict[str, Any]] = None, **refs) -> EtlRun:
    run = db.get(EtlRun, run_id)
    run.status = status
    run.counts = counts
    run.error_summary = error_summary
    run.completed_at = utcnow()
    for key, value in refs.items():
        setattr(run, key, value)
    db.commit()
    logger.info("run_finished stage=%s status=%s counts=%s", run.stage, status, counts)
    return run
