# lotledger/outcomes.py
"""Outcome rules for a single lot.

``decide`` is a pure function of the lot's current outcome, the evidence
gathered from the event ledger, the heuristic constants and the evaluation
time. It returns the new determination, or ``None`` when nothing changes.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .config import settings
from .models import OutcomeState

TERMINAL = (OutcomeState.SOLD, OutcomeState.NOT_SOLD)

METHOD_RELIST = "relist_detected"
METHOD_NO_RESERVE = "disappeared_after_grace"
METHOD_RESERVE_SOLD = "reserve_lot_reported_sold"
METHOD_ON_APPROVAL = "reserve_unresolved_after_window"


@dataclass(frozen=True)
class ResolverConfig:
    grace_period: timedelta = timedelta(hours=24)
    approval_window: timedelta = timedelta(days=7)
    sold_confidence: float = 0.85
    not_sold_confidence: float = 0.95
    on_approval_confidence: float = 0.60
    confidence_floor: float = 0.5

    @classmethod
    def from_settings(cls, grace_hours: Optional[float] = None, approval_days: Optional[float] = None):
        return cls(
            grace_period=timedelta(hours=settings.GRACE_HOURS if grace_hours is None else grace_hours),
            approval_window=timedelta(days=settings.APPROVAL_DAYS if approval_days is None else approval_days),
            sold_confidence=settings.SOLD_CONFIDENCE,
            not_sold_confidence=settings.NOT_SOLD_CONFIDENCE,
            on_approval_confidence=settings.ON_APPROVAL_CONFIDENCE,
            confidence_floor=settings.CONFIDENCE_FLOOR,
        )


@dataclass(frozen=True)
class Current:
    state: OutcomeState = OutcomeState.UNKNOWN
    confidence: Optional[float] = None


@dataclass(frozen=True)
class Evidence:
    auction_datetime: Optional[datetime] = None
    disappeared_at: Optional[datetime] = None
    reappeared: bool = False
    relisted_as: Optional[str] = None
    buy_it_now_price: Optional[Decimal] = None
    last_status: Optional[str] = None

    @property
    def has_reserve(self) -> bool:
        return self.buy_it_now_price is not None and self.buy_it_now_price > 0

    @property
    def gone(self) -> bool:
        return self.disappeared_at is not None and not self.reappeared


@dataclass(frozen=True)
class Decision:
    outcome: OutcomeState
    confidence: float
    method: str
    notes: str = ""


def is_locked(current: Current, config: ResolverConfig) -> bool:
    return (
        current.state in TERMINAL
        and current.confidence is not None
        and current.confidence >= config.confidence_floor
    )


def _changed(current: Current, decision: Decision) -> Optional[Decision]:
    if current.state == decision.outcome and current.confidence == decision.confidence:
        return None
    return decision


def decide(current: Current, evidence: Evidence, config: ResolverConfig, as_of: datetime) -> Optional[Decision]:
    # a relist is the strongest evidence and the only way out of a terminal state
    if evidence.relisted_as:
        decision = Decision(OutcomeState.NOT_SOLD, config.not_sold_confidence, METHOD_RELIST,
                            f"relisted as lot {evidence.relisted_as}")
        if is_locked(current, config) and not config.not_sold_confidence > (current.confidence or 0.0):
            return None
        return _changed(current, decision)

    if is_locked(current, config):
        return None

    if not evidence.gone or evidence.auction_datetime is None:
        return None
    if not evidence.auction_datetime < as_of - config.grace_period:
        return None

    if not evidence.has_reserve:
        return _changed(current, Decision(
            OutcomeState.SOLD, config.sold_confidence, METHOD_NO_RESERVE,
            f"disappeared {evidence.disappeared_at.isoformat()} after auction, no reserve",
        ))
    if evidence.last_status == "sold":
        return _changed(current, Decision(
            OutcomeState.SOLD, config.sold_confidence, METHOD_RESERVE_SOLD,
            "reserve lot last reported sold before disappearing",
        ))
    if evidence.disappeared_at <= as_of - config.approval_window:
        return _changed(current, Decision(
            OutcomeState.ON_APPROVAL, config.on_approval_confidence, METHOD_ON_APPROVAL,
            f"reserve {evidence.buy_it_now_price} and no relist within {config.approval_window}",
        ))
    return None


def is_pending(current: Current, evidence: Evidence, config: ResolverConfig) -> bool:
    """Gone from the source but not yet settled."""
    return evidence.gone and not is_locked(current, config) and current.state != OutcomeState.ON_APPROVAL
