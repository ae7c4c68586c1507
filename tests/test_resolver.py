# tests/test_resolver.py
from datetime import timedelta

from lotledger import crud, resolver
from lotledger.models import EtlRun, OutcomeDetermination, OutcomeState
from lotledger.outcomes import ResolverConfig

from factories import VIN_A, VIN_B, lot_row, utc

N0 = utc(2025, 1, 10)
N1 = utc(2025, 1, 11)
N2 = utc(2025, 1, 13)
AUCTION_L1 = utc(2025, 1, 12, 10)
AFTER_GRACE = utc(2025, 1, 14)


def _scenario_a(pipeline):
    pipeline(
        (N0, [lot_row("L1", vin=VIN_A), lot_row("L2", vin=VIN_B)]),
        (N1, [lot_row("L2", vin=VIN_B)]),
    )


def _scenario_b(pipeline):
    pipeline(
        (N0, [lot_row("L1", vin=VIN_A, sale_date="20250112")]),
        (N1, []),
        (N2, [lot_row("L3", vin=VIN_A, sale_date="20250119")]),
    )


def test_scenario_a_disappeared_lot_is_sold(pipeline, db):
    _scenario_a(pipeline)
    report = resolver.resolve(db, as_of=AFTER_GRACE)

    l1, l2 = crud.get_lot(db, "L1"), crud.get_lot(db, "L2")
    assert l1.outcome == OutcomeState.SOLD
    assert l1.outcome_confidence == 0.85
    assert l1.outcome_method == "disappeared_after_grace"
    assert l1.outcome_determined_at == AFTER_GRACE
    assert l2.outcome == OutcomeState.UNKNOWN
    assert report.evaluated == 1
    assert [u["external_lot_id"] for u in report.updated] == ["L1"]


def test_scenario_a_inside_grace_period_stays_unknown(pipeline, db):
    _scenario_a(pipeline)
    report = resolver.resolve(db, as_of=AUCTION_L1 + timedelta(hours=23, minutes=59))
    assert crud.get_lot(db, "L1").outcome == OutcomeState.UNKNOWN
    assert report.updated == []
    assert report.still_pending == ["L1"]


def test_scenario_b_relist_marks_not_sold_and_links_lots(pipeline, db):
    _scenario_b(pipeline)
    report = resolver.resolve(db, as_of=AFTER_GRACE)

    l1, l3 = crud.get_lot(db, "L1"), crud.get_lot(db, "L3")
    assert l1.outcome == OutcomeState.NOT_SOLD
    assert l1.outcome_confidence == 0.95
    assert l1.outcome_method == "relist_detected"
    assert l1.previous_lot_id is None
    assert l3.previous_lot_id == l1.id
    assert l3.relist_count == 1
    assert report.relinked == [{"previous": "L1", "successor": "L3"}]


def test_sold_lot_flips_to_not_sold_on_later_relist(pipeline, db):
    pipeline((N0, [lot_row("L1", vin=VIN_A)]), (N1, []))
    resolver.resolve(db, as_of=AFTER_GRACE)
    assert crud.get_lot(db, "L1").outcome == OutcomeState.SOLD

    pipeline((utc(2025, 1, 15), [lot_row("L3", vin=VIN_A, sale_date="20250122")]))
    resolver.resolve(db, as_of=utc(2025, 1, 16))
    l1 = crud.get_lot(db, "L1")
    assert l1.outcome == OutcomeState.NOT_SOLD
    assert l1.outcome_confidence == 0.95
    history = db.query(OutcomeDetermination).order_by(OutcomeDetermination.id).all()
    assert [(h.previous_outcome, h.outcome) for h in history] == [("unknown", "sold"), ("sold", "not_sold")]


def test_sold_is_stable_across_runs(pipeline, db):
    _scenario_a(pipeline)
    resolver.resolve(db, as_of=AFTER_GRACE)
    report = resolver.resolve(db, as_of=AFTER_GRACE + timedelta(days=30))
    assert report.updated == []
    assert crud.get_lot(db, "L1").outcome == OutcomeState.SOLD
    assert db.query(OutcomeDetermination).count() == 1


def test_resolve_is_idempotent(pipeline, db):
    _scenario_b(pipeline)
    resolver.resolve(db, as_of=AFTER_GRACE)
    again = resolver.resolve(db, as_of=AFTER_GRACE)
    assert again.updated == []
    assert again.relinked == []
    assert crud.get_lot(db, "L3").relist_count == 1
    assert db.query(OutcomeDetermination).count() == 1


def test_reserve_lot_goes_on_approval(pipeline, db):
    pipeline(
        (N0, [lot_row("L1", vin=VIN_A, buy_now="4500")]),
        (N1, []),
    )
    assert resolver.resolve(db, as_of=AFTER_GRACE).still_pending == ["L1"]
    resolver.resolve(db, as_of=N1 + timedelta(days=8))
    l1 = crud.get_lot(db, "L1")
    assert l1.outcome == OutcomeState.ON_APPROVAL
    assert l1.outcome_confidence == 0.60


def test_dry_run_rolls_back(pipeline, db):
    _scenario_a(pipeline)
    report = resolver.resolve(db, as_of=AFTER_GRACE, dry_run=True)
    assert len(report.updated) == 1
    db.expire_all()
    assert crud.get_lot(db, "L1").outcome == OutcomeState.UNKNOWN
    assert db.query(OutcomeDetermination).count() == 0


def test_single_lot_restriction(pipeline, db):
    pipeline(
        (N0, [lot_row("L1", vin=VIN_A), lot_row("L2", vin=VIN_B)]),
        (N1, []),
    )
    report = resolver.resolve(db, as_of=AFTER_GRACE, lot="L2")
    assert report.evaluated == 1
    assert crud.get_lot(db, "L2").outcome == OutcomeState.SOLD
    assert crud.get_lot(db, "L1").outcome == OutcomeState.UNKNOWN


def test_custom_grace_period(pipeline, db):
    _scenario_a(pipeline)
    config = ResolverConfig(grace_period=timedelta(hours=1))
    resolver.resolve(db, as_of=AUCTION_L1 + timedelta(hours=2), config=config)
    assert crud.get_lot(db, "L1").outcome == OutcomeState.SOLD


def test_run_resolve_records_run(pipeline, db):
    _scenario_a(pipeline)
    resolver.run_resolve(db, as_of=AFTER_GRACE)
    run = db.query(EtlRun).filter(EtlRun.stage == "resolve").one()
    assert run.status == "completed"
    assert run.counts["updated"] == 1
