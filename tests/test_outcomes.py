# tests/test_outcomes.py
from datetime import timedelta
from decimal import Decimal

import pytest

from lotledger import outcomes
from lotledger.models import OutcomeState
from lotledger.outcomes import Current, Evidence, ResolverConfig

from factories import utc

AUCTION = utc(2025, 1, 12, 10)
CONFIG = ResolverConfig()
UNKNOWN = Current()


def _gone(**fields):
    base = {"auction_datetime": AUCTION, "disappeared_at": AUCTION + timedelta(hours=2)}
    base.update(fields)
    return Evidence(**base)


@pytest.mark.parametrize("offset, expected", [
    (timedelta(hours=24) - timedelta(minutes=1), None),
    (timedelta(hours=24), None),
    (timedelta(hours=24) + timedelta(minutes=1), OutcomeState.SOLD),
])
def test_grace_period_boundary(offset, expected):
    decision = outcomes.decide(UNKNOWN, _gone(), CONFIG, AUCTION + offset)
    assert (decision.outcome if decision else None) == expected


def test_no_reserve_disappearance_is_sold():
    decision = outcomes.decide(UNKNOWN, _gone(buy_it_now_price=Decimal("0")), CONFIG, AUCTION + timedelta(days=2))
    assert decision.outcome == OutcomeState.SOLD
    assert decision.confidence == 0.85
    assert decision.method == outcomes.METHOD_NO_RESERVE


def test_present_lot_is_left_alone():
    evidence = Evidence(auction_datetime=AUCTION)
    assert outcomes.decide(UNKNOWN, evidence, CONFIG, AUCTION + timedelta(days=30)) is None
    assert not outcomes.is_pending(UNKNOWN, evidence, CONFIG)


def test_reappeared_lot_is_not_gone():
    evidence = _gone(reappeared=True)
    assert outcomes.decide(UNKNOWN, evidence, CONFIG, AUCTION + timedelta(days=30)) is None


def test_reserve_lot_waits_for_approval_window():
    evidence = _gone(buy_it_now_price=Decimal("5000"))
    within = AUCTION + timedelta(days=3)
    assert outcomes.decide(UNKNOWN, evidence, CONFIG, within) is None
    assert outcomes.is_pending(UNKNOWN, evidence, CONFIG)

    decision = outcomes.decide(UNKNOWN, evidence, CONFIG, evidence.disappeared_at + timedelta(days=7))
    assert decision.outcome == OutcomeState.ON_APPROVAL
    assert decision.confidence == 0.60
    assert decision.method == outcomes.METHOD_ON_APPROVAL


def test_reserve_lot_last_seen_sold():
    evidence = _gone(buy_it_now_price=Decimal("5000"), last_status="sold")
    current = Current(OutcomeState.ON_APPROVAL, 0.60)
    decision = outcomes.decide(current, evidence, CONFIG, AUCTION + timedelta(days=10))
    assert decision.outcome == OutcomeState.SOLD
    assert decision.method == outcomes.METHOD_RESERVE_SOLD


def test_sold_is_not_regressed_without_relist():
    current = Current(OutcomeState.SOLD, 0.85)
    evidence = _gone(buy_it_now_price=Decimal("5000"))
    assert outcomes.decide(current, evidence, CONFIG, AUCTION + timedelta(days=30)) is None
    assert not outcomes.is_pending(current, evidence, CONFIG)


def test_relist_overrides_sold():
    current = Current(OutcomeState.SOLD, 0.85)
    decision = outcomes.decide(current, _gone(relisted_as="L3"), CONFIG, AUCTION + timedelta(days=30))
    assert decision.outcome == OutcomeState.NOT_SOLD
    assert decision.confidence == 0.95
    assert decision.method == outcomes.METHOD_RELIST
    assert "L3" in decision.notes


def test_relist_applies_before_grace_elapses():
    decision = outcomes.decide(UNKNOWN, _gone(relisted_as="L3"), CONFIG, AUCTION)
    assert decision.outcome == OutcomeState.NOT_SOLD


def test_relist_does_not_override_equal_confidence():
    current = Current(OutcomeState.NOT_SOLD, 0.95)
    assert outcomes.decide(current, _gone(relisted_as="L3"), CONFIG, AUCTION + timedelta(days=30)) is None


def test_relist_overrides_locked_state_only_with_higher_confidence():
    current = Current(OutcomeState.SOLD, 0.99)
    assert outcomes.decide(current, _gone(relisted_as="L3"), CONFIG, AUCTION + timedelta(days=30)) is None


def test_low_confidence_terminal_state_is_not_locked():
    current = Current(OutcomeState.SOLD, 0.4)
    assert not outcomes.is_locked(current, CONFIG)
    decision = outcomes.decide(current, _gone(), CONFIG, AUCTION + timedelta(days=2))
    assert decision.outcome == OutcomeState.SOLD
    assert decision.confidence == 0.85


def test_config_is_injectable():
    config = ResolverConfig(grace_period=timedelta(hours=1), sold_confidence=0.7)
    decision = outcomes.decide(UNKNOWN, _gone(), config, AUCTION + timedelta(hours=1, minutes=1))
    assert decision.confidence == 0.7


def test_config_from_settings_overrides():
    config = ResolverConfig.from_settings(grace_hours=6, approval_days=2)
    assert config.grace_period == timedelta(hours=6)
    assert config.approval_window == timedelta(days=2)
