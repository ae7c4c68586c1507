# tests/test_crud.py
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from lotledger import crud
from lotledger.models import ConflictLogEntry, EtlRun, Lot
from lotledger.results import SnapshotNotFound

from factories import VIN_A, lot_row, utc

T1 = utc(2025, 1, 9, 12)
T2 = utc(2025, 1, 9, 18)


def _lot(bid, revision, **extra):
    return dict({"current_bid": Decimal(bid), "status": "active", "source_revision_at": revision}, **extra)


def test_upsert_and_get(db):
    assert crud.upsert_lot(db, "copart", "test123", _lot("1000", T1, yard_name="Test Yard")) == crud.INSERTED
    db.commit()
    obj = crud.get_lot(db, "test123")
    assert obj is not None
    assert obj.yard_name == "Test Yard"
    assert obj.current_bid == Decimal("1000")
    assert obj.outcome.value == "unknown"
    assert obj.relist_count == 0


@pytest.mark.parametrize("order", [(T1, T2), (T2, T1)])
def test_monotonic_upsert_keeps_newest_revision(db, order):
    bids = {T1: "100", T2: "200"}
    statuses = []
    for revision in order:
        statuses.append(crud.upsert_lot(db, "copart", "L1", _lot(bids[revision], revision)))
    db.commit()
    lot = crud.get_lot(db, "L1", source="copart")
    assert lot.current_bid == Decimal("200")
    assert lot.source_revision_at == T2
    assert statuses[1] == (crud.UPDATED if order[0] == T1 else crud.STALE)


def test_older_revision_is_a_noop(db):
    crud.upsert_lot(db, "copart", "L1", _lot("200", T2))
    db.commit()
    before = crud.get_lot(db, "L1").updated_at
    assert crud.upsert_lot(db, "copart", "L1", _lot("100", T1)) == crud.STALE
    assert crud.upsert_lot(db, "copart", "L1", _lot("100", None)) == crud.STALE
    db.commit()
    db.expire_all()
    lot = crud.get_lot(db, "L1")
    assert lot.current_bid == Decimal("200")
    assert lot.updated_at == before


def test_same_revision_is_unchanged(db):
    crud.upsert_lot(db, "copart", "L1", _lot("200", T2))
    assert crud.upsert_lot(db, "copart", "L1", _lot("999", T2)) == crud.UNCHANGED
    db.commit()
    assert crud.get_lot(db, "L1").current_bid == Decimal("200")


def test_unrevisioned_row_is_always_overwritten(db):
    crud.upsert_lot(db, "copart", "L1", _lot("100", None))
    assert crud.upsert_lot(db, "copart", "L1", _lot("150", None)) == crud.UPDATED
    db.commit()
    assert crud.get_lot(db, "L1").current_bid == Decimal("150")


def test_lots_are_scoped_by_source(db):
    crud.upsert_lot(db, "copart", "L1", _lot("100", T1))
    crud.upsert_lot(db, "iaai", "L1", _lot("300", T1))
    db.commit()
    assert db.query(Lot).count() == 2
    assert crud.get_lot(db, "L1", source="iaai").current_bid == Decimal("300")


def test_vehicle_collision_leaves_stored_row(db):
    values = {"year": 2015, "make": "HONDA"}
    assert crud.upsert_vehicle(db, "AB123CD", "ab-123-cd", "legacy", values, T1) == crud.INSERTED
    assert crud.upsert_vehicle(db, "AB123CD", "AB123CD", "legacy", {"make": "ACURA"}, T2) == crud.COLLISION
    assert crud.upsert_vehicle(db, "AB123CD", " AB-123-cd ", "legacy", {"make": "ACURA"}, T2) == crud.UPDATED
    db.commit()
    assert crud.get_vehicle(db, "AB123CD").make == "ACURA"


def test_vehicle_monotonic(db):
    crud.upsert_vehicle(db, VIN_A, VIN_A, "vin17", {"make": "HONDA"}, T2)
    assert crud.upsert_vehicle(db, VIN_A, VIN_A, "vin17", {"make": "OLD"}, T1) == crud.STALE
    db.commit()
    assert crud.get_vehicle(db, VIN_A).make == "HONDA"


def test_constraint_name_from_check_violation(db):
    with pytest.raises(IntegrityError) as exc_info:
        with db.begin_nested():
            crud.upsert_lot(db, "copart", "L1", _lot("-5", T1))
    assert crud.constraint_name(exc_info.value) == "ck_lots_current_bid_nonneg"


def test_log_conflict(db):
    crud.log_conflict(db, "stale_revision", "kept_existing", external_lot_id="L1", detail={"entity": "lot"})
    db.commit()
    entry = db.query(ConflictLogEntry).one()
    assert entry.kind == "stale_revision"
    assert entry.detected_at is not None


def test_resolve_snapshot_by_id_and_hash_prefix(db, ingest):
    report = ingest([lot_row("L1")], utc(2025, 1, 10))
    assert crud.resolve_snapshot(db, report.snapshot_id).id == report.snapshot_id
    assert crud.resolve_snapshot(db, report.content_hash[:8]).id == report.snapshot_id
    assert crud.resolve_snapshot(db, report.content_hash.upper()[:12]).id == report.snapshot_id
    with pytest.raises(SnapshotNotFound):
        crud.resolve_snapshot(db, report.content_hash[:7])
    with pytest.raises(SnapshotNotFound):
        crud.resolve_snapshot(db, "")


def test_previous_snapshot(db, ingest):
    first = ingest([lot_row("L1")], utc(2025, 1, 10))
    second = ingest([lot_row("L2")], utc(2025, 1, 11))
    snap = crud.resolve_snapshot(db, second.snapshot_id)
    assert crud.previous_snapshot(db, snap).id == first.snapshot_id
    assert crud.previous_snapshot(db, crud.resolve_snapshot(db, first.snapshot_id)) is None


def test_run_records(db):
    run = crud.start_run(db, "upsert", dry_run=True)
    crud.finish_run(db, run.id, "completed", counts={"processed": 3})
    stored = db.get(EtlRun, run.id)
    assert stored.status == "completed"
    assert stored.dry_run is True
    assert stored.counts == {"processed": 3}
    assert stored.completed_at >= stored.started_at
