# lotledger/models.py
"""SQLAlchemy ORM models for persisted entities.

Five logical stores: the raw snapshot registry (`snapshot_files`), raw row
documents (`raw_rows`), staging records, the normalized `vehicles`/`lots`
tables, and the append-only `auction_events` ledger. Audit tables
(`conflict_log`, `etl_runs`, `upsert_results`, `outcome_determinations`,
`diff_runs`) and `run_locks` sit beside them.
"""
import enum
import uuid

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Enum, Float, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint,
)

from .db import Base, BigId, JSONDocument, UTCDateTime
from .utils import utcnow


class OutcomeState(str, enum.Enum):
    UNKNOWN = "unknown"
    SOLD = "sold"
    NOT_SOLD = "not_sold"
    ON_APPROVAL = "on_approval"


class EventType(str, enum.Enum):
    APPEARED = "appeared"
    DISAPPEARED = "disappeared"
    UPDATED = "updated"
    RELISTED = "relisted"


def _new_id():
    return str(uuid.uuid4())


def _values(enum_cls):
    return [member.value for member in enum_cls]


class SnapshotFile(Base):
    __tablename__ = "snapshot_files"
    id = Column(String(36), primary_key=True, default=_new_id)
    source = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False, unique=True)
    origin = Column(Text)
    byte_size = Column(Integer, nullable=False)
    declared_row_count = Column(Integer, nullable=False)
    headers = Column(JSONDocument, nullable=False)
    column_changes = Column(JSONDocument)
    encoding = Column(Text)
    captured_at = Column(UTCDateTime, nullable=False)
    ingested_at = Column(UTCDateTime, nullable=False, default=utcnow)


class RawRow(Base):
    __tablename__ = "raw_rows"
    id = Column(BigId, primary_key=True)
    snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    row_index = Column(Integer, nullable=False)
    payload = Column(JSONDocument, nullable=False)
    parse_error = Column(Text)
    __table_args__ = (UniqueConstraint("snapshot_id", "row_index", name="uq_raw_rows_snapshot_row"),)


class StagingRecord(Base):
    __tablename__ = "staging_records"
    id = Column(BigId, primary_key=True)
    snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    row_index = Column(Integer, nullable=False)
    external_lot_id = Column(Text, nullable=False)
    vehicle_id_raw = Column(Text)
    payload = Column(JSONDocument, nullable=False)
    __table_args__ = (UniqueConstraint("snapshot_id", "row_index", name="uq_staging_snapshot_row"),)


class UpsertResult(Base):
    __tablename__ = "upsert_results"
    staging_id = Column(BigId, ForeignKey("staging_records.id"), primary_key=True)
    snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    status = Column(Text, nullable=False)
    vehicle_status = Column(Text)
    error = Column(Text)
    constraint_name = Column(Text)
    field_warnings = Column(JSONDocument)
    processed_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Vehicle(Base):
    __tablename__ = "vehicles"
    vehicle_id = Column(String(20), primary_key=True)
    vehicle_id_raw = Column(Text)
    id_scheme = Column(Text)
    year = Column(Integer)
    make = Column(Text)
    model = Column(Text)
    trim = Column(Text)
    body_style = Column(Text)
    color = Column(Text)
    engine = Column(Text)
    drive = Column(Text)
    transmission = Column(Text)
    fuel_type = Column(Text)
    source_revision_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Lot(Base):
    __tablename__ = "lots"
    id = Column(Integer, primary_key=True)
    source = Column(Text, nullable=False)
    external_lot_id = Column(Text, nullable=False)
    vehicle_id = Column(String(20), ForeignKey("vehicles.vehicle_id"))
    vehicle_id_raw = Column(Text)
    vehicle_id_issue = Column(Text)
    site_code = Column(Text)
    yard_name = Column(Text)
    city = Column(Text)
    region = Column(Text)
    country = Column(Text)
    postal_code = Column(Text)
    time_zone = Column(Text)
    auction_datetime = Column(UTCDateTime)
    current_bid = Column(Numeric(12, 2))
    buy_it_now_price = Column(Numeric(12, 2))
    retail_value = Column(Numeric(12, 2))
    repair_cost = Column(Numeric(12, 2))
    odometer = Column(Numeric(10, 1))
    currency_code = Column(String(3))
    has_keys = Column(Boolean)
    status = Column(Text)
    sale_status_raw = Column(Text)
    damage_description = Column(Text)
    secondary_damage = Column(Text)
    title_type = Column(Text)
    runs_drives = Column(Text)
    outcome = Column(
        Enum(OutcomeState, name="lot_outcome", native_enum=False, values_callable=_values),
        nullable=False,
        default=OutcomeState.UNKNOWN,
    )
    outcome_confidence = Column(Float)
    outcome_determined_at = Column(UTCDateTime)
    outcome_method = Column(Text)
    outcome_notes = Column(Text)
    relist_count = Column(Integer, nullable=False, default=0)
    previous_lot_id = Column(Integer, ForeignKey("lots.id"))
    source_revision_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    __table_args__ = (
        UniqueConstraint("source", "external_lot_id", name="uq_lots_source_external_id"),
        CheckConstraint("current_bid IS NULL OR current_bid >= 0", name="ck_lots_current_bid_nonneg"),
        CheckConstraint("buy_it_now_price IS NULL OR buy_it_now_price >= 0", name="ck_lots_buy_it_now_nonneg"),
        CheckConstraint("retail_value IS NULL OR retail_value >= 0", name="ck_lots_retail_value_nonneg"),
        CheckConstraint("repair_cost IS NULL OR repair_cost >= 0", name="ck_lots_repair_cost_nonneg"),
        CheckConstraint("odometer IS NULL OR odometer >= 0", name="ck_lots_odometer_nonneg"),
        CheckConstraint(
            "outcome_confidence IS NULL OR (outcome_confidence >= 0 AND outcome_confidence <= 1)",
            name="ck_lots_outcome_confidence_range",
        ),
    )


class AuctionEvent(Base):
    __tablename__ = "auction_events"
    id = Column(BigId, primary_key=True)
    event_key = Column(String(64), nullable=False, unique=True)
    event_type = Column(
        Enum(EventType, name="auction_event_type", native_enum=False, values_callable=_values),
        nullable=False,
    )
    source = Column(Text, nullable=False)
    external_lot_id = Column(Text, nullable=False)
    vehicle_id = Column(String(20))
    previous_external_lot_id = Column(Text)
    occurred_at = Column(UTCDateTime, nullable=False)
    sequence = Column(Integer, nullable=False)
    snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    previous_snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    payload = Column(JSONDocument, nullable=False)
    recorded_at = Column(UTCDateTime, nullable=False, default=utcnow)


class DiffRun(Base):
    __tablename__ = "diff_runs"
    id = Column(Integer, primary_key=True)
    previous_snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    current_snapshot_id = Column(String(36), ForeignKey("snapshot_files.id"), nullable=False)
    event_counts = Column(JSONDocument, nullable=False)
    completed_at = Column(UTCDateTime, nullable=False, default=utcnow)
    __table_args__ = (UniqueConstraint("previous_snapshot_id", "current_snapshot_id", name="uq_diff_runs_pair"),)


class OutcomeDetermination(Base):
    __tablename__ = "outcome_determinations"
    id = Column(Integer, primary_key=True)
    lot_id = Column(Integer, ForeignKey("lots.id"), nullable=False)
    external_lot_id = Column(Text, nullable=False)
    previous_outcome = Column(Text, nullable=False)
    outcome = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)
    method = Column(Text, nullable=False)
    notes = Column(Text)
    as_of = Column(UTCDateTime, nullable=False)
    recorded_at = Column(UTCDateTime, nullable=False, default=utcnow)


class ConflictLogEntry(Base):
    __tablename__ = "conflict_log"
    id = Column(Integer, primary_key=True)
    kind = Column(Text, nullable=False)
    snapshot_id = Column(String(36))
    staging_id = Column(Integer)
    external_lot_id = Column(Text)
    vehicle_id_raw = Column(Text)
    vehicle_id = Column(Text)
    constraint_name = Column(Text)
    detail = Column(JSONDocument)
    resolution = Column(Text, nullable=False)
    detected_at = Column(UTCDateTime, nullable=False, default=utcnow)


class EtlRun(Base):
    __tablename__ = "etl_runs"
    id = Column(String(36), primary_key=True, default=_new_id)
    stage = Column(Text, nullable=False)
    snapshot_id = Column(String(36))
    previous_snapshot_id = Column(String(36))
    status = Column(Text, nullable=False)
    counts = Column(JSONDocument)
    error_summary = Column(JSONDocument)
    dry_run = Column(Boolean, nullable=False, default=False)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime)


class RunLock(Base):
    __tablename__ = "run_locks"
    lock_key = Column(Text, primary_key=True)
    owner = Column(Text, nullable=False)
    acquired_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)


Index("idx_staging_lot", StagingRecord.external_lot_id)
Index("idx_staging_vehicle", StagingRecord.vehicle_id_raw)
Index("idx_lots_vehicle", Lot.vehicle_id)
Index("idx_lots_auction_datetime", Lot.auction_datetime)
Index("idx_lots_outcome", Lot.outcome)
Index("idx_events_lot", AuctionEvent.external_lot_id)
Index("idx_events_vehicle_type", AuctionEvent.vehicle_id, AuctionEvent.event_type)
Index("idx_events_previous_lot", AuctionEvent.previous_external_lot_id)
Index("idx_events_snapshot", AuctionEvent.snapshot_id)
Index("idx_conflicts_kind", ConflictLogEntry.kind)
Index("idx_etl_runs_stage", EtlRun.stage, EtlRun.started_at)
