# lotledger/capture.py
"""Raw capture and staging extraction for snapshot files.

A snapshot is admitted exactly once per distinct content (sha256). Admission
writes the snapshot registry row, one raw row per data record (including
records that failed structural parsing) and one staging record per record
that carries a lot number, all inside a single transaction.
"""
import csv
import io
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import columns as c
from . import crud
from .coerce import text
from .config import settings
from .models import RawRow, SnapshotFile, StagingRecord
from .results import SnapshotParseError
from .utils import as_utc, logger, sha256_hex, utcnow

MAX_WARNINGS = 50

_PATH_STAMP = re.compile(r"(\d{4})/(\d{2})/(\d{2})/(\d{2})(\d{2})\.csv$", re.IGNORECASE)


@dataclass
class ParsedRecord:
    row_index: int
    payload: Dict[str, Any]
    parse_error: Optional[str] = None


@dataclass
class IngestReport:
    snapshot_id: Optional[str] = None
    content_hash: Optional[str] = None
    source: Optional[str] = None
    captured_at: Optional[datetime] = None
    encoding: Optional[str] = None
    declared_row_count: int = 0
    rows_inserted: int = 0
    keys_extracted: int = 0
    parse_errors: int = 0
    missing_lot_id: int = 0
    missing_vehicle_id: int = 0
    column_changes: Optional[Dict[str, List[str]]] = None
    warnings: List[str] = field(default_factory=list)
    skipped: bool = False
    dry_run: bool = False

    @property
    def unknown_rate(self) -> float:
        """Percent of staged records without a vehicle identifier."""
        if not self.keys_extracted:
            return 0.0
        return round(100.0 * self.missing_vehicle_id / self.keys_extracted, 2)

    def warn(self, message: str) -> None:
        if len(self.warnings) < MAX_WARNINGS:
            self.warnings.append(message)

    def counts(self) -> Dict[str, Any]:
        return {
            "declared_row_count": self.declared_row_count,
            "rows_inserted": self.rows_inserted,
            "keys_extracted": self.keys_extracted,
            "parse_errors": self.parse_errors,
            "missing_lot_id": self.missing_lot_id,
            "missing_vehicle_id": self.missing_vehicle_id,
            "unknown_rate": self.unknown_rate,
        }


def decode(data: bytes, report: IngestReport) -> str:
    try:
        report.encoding = "utf-8"
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        report.encoding = "latin-1"
        report.warn(f"not valid UTF-8 ({e.reason} at byte {e.start}); decoded as Latin-1")
        logger.warning("snapshot_decode_fallback encoding=latin-1 position=%s", e.start)
        return data.decode("latin-1")


class _LineTap:
    """Line iterator for ``csv.reader`` that remembers what each record consumed."""

    def __init__(self, lines):
        self._lines = iter(lines)
        self._seen: List[str] = []

    def __iter__(self):
        return self

    def __next__(self) -> str:
        line = next(self._lines)
        self._seen.append(line)
        return line

    def take(self) -> str:
        consumed, self._seen = "".join(self._seen), []
        return consumed


def parse(content: str, delimiter: str, report: IngestReport):
    """Split decoded content into a header and parsed records.

    Blank lines are not records. A record whose field count differs from the
    header, or that the csv module rejects, becomes a ``ParsedRecord`` with
    ``parse_error`` set.
    """
    tap = _LineTap(io.StringIO(content, newline=""))
    reader = csv.reader(tap, delimiter=delimiter)
    headers: Optional[List[str]] = None
    records: List[ParsedRecord] = []
    row_index = 0
    while True:
        try:
            values = next(reader)
        except StopIteration:
            break
        except csv.Error as e:
            if headers is None:
                raise SnapshotParseError(f"unreadable header: {e}") from e
            row_index += 1
            raw = tap.take()
            records.append(ParsedRecord(row_index, {"line": reader.line_num, "raw": raw}, f"csv error: {e}"))
            continue
        tap.take()
        if not values or all(not v.strip() for v in values):
            continue
        if headers is None:
            headers = [h.strip() for h in values]
            if len(set(headers)) != len(headers):
                report.warn("duplicate column names in header; later columns win")
            continue
        row_index += 1
        if len(values) != len(headers):
            records.append(ParsedRecord(
                row_index, {"fields": values},
                f"expected {len(headers)} fields, got {len(values)}",
            ))
            continue
        records.append(ParsedRecord(row_index, dict(zip(headers, values))))
    if headers is None:
        raise SnapshotParseError("snapshot has no header row")
    return headers, records


def captured_at_from_path(path) -> Optional[datetime]:
    """Capture time encoded as ``.../YYYY/MM/DD/HHMM.csv`` in the path."""
    m = _PATH_STAMP.search(Path(path).as_posix())
    if not m:
        return None
    try:
        return as_utc(datetime(*(int(g) for g in m.groups())))
    except ValueError:
        return None


def _column_changes(db: Session, snap: SnapshotFile) -> Optional[Dict[str, List[str]]]:
    previous = crud.previous_snapshot(db, snap)
    if previous is None:
        return None
    old, new = set(previous.headers or []), set(snap.headers)
    added, removed = sorted(new - old), sorted(old - new)
    if not added and not removed:
        return None
    return {"previous_snapshot_id": previous.id, "added": added, "removed": removed}


def _batches(rows: List[Dict[str, Any]], size: int):
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def ingest_bytes(db: Session, data: bytes, source: Optional[str] = None, origin: Optional[str] = None,
                 captured_at: Optional[datetime] = None, dry_run: bool = False) -> IngestReport:
    """Admit one snapshot; returns the report. Re-submitted content is skipped."""
    source = source or settings.SOURCE_NAME
    report = IngestReport(source=source, dry_run=dry_run)
    report.content_hash = sha256_hex(data)

    existing = db.query(SnapshotFile).filter(SnapshotFile.content_hash == report.content_hash).first()
    if existing is not None:
        report.skipped = True
        report.snapshot_id = existing.id
        report.captured_at = existing.captured_at
        logger.info("snapshot_skipped hash=%s snapshot=%s reason=already_ingested",
                    report.content_hash[:12], existing.id)
        return report

    headers, records = parse(decode(data, report), settings.SNAPSHOT_DELIMITER, report)
    report.declared_row_count = len(records)
    report.captured_at = as_utc(captured_at) or (captured_at_from_path(origin) if origin else None) or utcnow()

    raw_rows, staging_rows = [], []
    for rec in records:
        raw_rows.append({"row_index": rec.row_index, "payload": rec.payload, "parse_error": rec.parse_error})
        if rec.parse_error:
            report.parse_errors += 1
            report.warn(f"row {rec.row_index}: {rec.parse_error}")
            logger.warning("row_parse_error row=%s error=%s", rec.row_index, rec.parse_error)
            continue
        lot_id = text(rec.payload.get(c.LOT_NUMBER))
        if lot_id is None:
            report.missing_lot_id += 1
            report.warn(f"row {rec.row_index}: missing {c.LOT_NUMBER}; not staged")
            continue
        vehicle_id_raw = text(rec.payload.get(c.VIN))
        if vehicle_id_raw is None:
            report.missing_vehicle_id += 1
        staging_rows.append({
            "row_index": rec.row_index,
            "external_lot_id": lot_id,
            "vehicle_id_raw": vehicle_id_raw,
            "payload": rec.payload,
        })

    if records and report.parse_errors == len(records):
        raise SnapshotParseError(f"all {len(records)} records failed to parse")

    report.rows_inserted = len(raw_rows)
    report.keys_extracted = len(staging_rows)
    if report.unknown_rate > settings.UNKNOWN_RATE_ALERT:
        report.warn(f"unknown vehicle id rate {report.unknown_rate}% above {settings.UNKNOWN_RATE_ALERT}%")
        logger.warning("unknown_rate_alert rate=%s threshold=%s", report.unknown_rate, settings.UNKNOWN_RATE_ALERT)

    snap = SnapshotFile(
        source=source,
        content_hash=report.content_hash,
        origin=origin,
        byte_size=len(data),
        declared_row_count=report.declared_row_count,
        headers=headers,
        encoding=report.encoding,
        captured_at=report.captured_at,
        ingested_at=utcnow(),
    )
    try:
        db.add(snap)
        db.flush()
        snap.column_changes = report.column_changes = _column_changes(db, snap)
        for row in raw_rows:
            row["snapshot_id"] = snap.id
        for row in staging_rows:
            row["snapshot_id"] = snap.id
        for batch in _batches(raw_rows, settings.INGEST_BATCH_SIZE):
            db.execute(RawRow.__table__.insert(), batch)
        for batch in _batches(staging_rows, settings.INGEST_BATCH_SIZE):
            db.execute(StagingRecord.__table__.insert(), batch)
        report.snapshot_id = snap.id
        if dry_run:
            db.rollback()
        else:
            db.commit()
    except IntegrityError:
        # a concurrent run admitted the same content first
        db.rollback()
        report.skipped = True
        logger.info("snapshot_skipped hash=%s reason=concurrent_admission", report.content_hash[:12])
        return report
    except BaseException:
        db.rollback()
        raise

    if report.column_changes:
        logger.warning("column_set_changed snapshot=%s added=%s removed=%s", report.snapshot_id,
                       report.column_changes["added"], report.column_changes["removed"])
    logger.info(
        "snapshot_ingested snapshot=%s hash=%s declared=%s rows=%s staged=%s parse_errors=%s "
        "missing_lot=%s unknown_rate=%s dry_run=%s",
        report.snapshot_id, report.content_hash[:12], report.declared_row_count, report.rows_inserted,
        report.keys_extracted, report.parse_errors, report.missing_lot_id, report.unknown_rate, dry_run,
    )
    return report


def ingest_path(db: Session, path, source: Optional[str] = None, captured_at: Optional[datetime] = None,
                dry_run: bool = False) -> IngestReport:
    path = Path(path)
    data = path.read_bytes()
    return ingest_bytes(db, data, source=source, origin=str(path), captured_at=captured_at, dry_run=dry_run)


def run_ingest(db: Session, path, source: Optional[str] = None, captured_at: Optional[datetime] = None,
               dry_run: bool = False) -> IngestReport:
    """Ingest a file and record the run in ``etl_runs``."""
    run = crud.start_run(db, "ingest", dry_run=dry_run)
    run_id = run.id
    try:
        report = ingest_path(db, path, source=source, captured_at=captured_at, dry_run=dry_run)
    except Exception as e:
        db.rollback()
        crud.finish_run(db, run_id, "failed", error_summary={"error": str(e), "type": type(e).__name__})
        raise
    status = "skipped" if report.skipped else ("partial" if report.parse_errors else "completed")
    crud.finish_run(
        db, run_id, status,
        counts=report.counts(),
        error_summary={"warnings": report.warnings} if report.warnings else None,
        snapshot_id=None if dry_run else report.snapshot_id,
    )
    return report
