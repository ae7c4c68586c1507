# lotledger/results.py
"""Per-row results, batch reports and the error hierarchy."""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class LedgerError(Exception):
    """Base class for errors raised by the engine."""


class SnapshotParseError(LedgerError):
    """The snapshot cannot be parsed at all (no header, every record broken)."""


class SnapshotNotFound(LedgerError):
    pass


class LockUnavailable(LedgerError):
    def __init__(self, lock_key: str, owner: str, expires_at):
        super().__init__(f"lock {lock_key} held by {owner} until {expires_at.isoformat()}")
        self.lock_key = lock_key
        self.owner = owner
        self.expires_at = expires_at


class FatalRowError(LedgerError):
    """A row failed in a way that invalidates the rest of the batch."""


class RowStatus(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    FATAL = "fatal"


@dataclass
class RowResult:
    staging_id: int
    external_lot_id: str
    status: RowStatus
    vehicle_status: Optional[str] = None
    error: Optional[str] = None
    constraint_name: Optional[str] = None
    conflicts: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status not in (RowStatus.FAILED, RowStatus.FATAL)


@dataclass
class UpsertReport:
    snapshot_id: Optional[str] = None
    vehicles_written: int = 0
    lots_written: int = 0
    lots_inserted: int = 0
    lots_updated: int = 0
    unchanged: int = 0
    stale: int = 0
    failed: int = 0
    superseded: int = 0
    # rows processed in the aborted chunk and rolled back with it
    rolled_back: int = 0
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    fatal: Optional[str] = None
    dry_run: bool = False

    @property
    def processed(self) -> int:
        return (self.lots_inserted + self.lots_updated + self.unchanged + self.stale + self.failed
                + self.superseded)

    def add(self, result: RowResult) -> None:
        if result.status == RowStatus.INSERTED:
            self.lots_inserted += 1
            self.lots_written += 1
        elif result.status == RowStatus.UPDATED:
            self.lots_updated += 1
            self.lots_written += 1
        elif result.status == RowStatus.UNCHANGED:
            self.unchanged += 1
        elif result.status == RowStatus.STALE:
            self.stale += 1
        elif result.status == RowStatus.FAILED:
            self.failed += 1
            self.skipped.append({
                "staging_id": result.staging_id,
                "external_lot_id": result.external_lot_id,
                "error": result.error,
                "constraint": result.constraint_name,
            })
        elif result.status == RowStatus.SUPERSEDED:
            self.superseded += 1
        elif result.status == RowStatus.FATAL:
            self.fatal = result.error
        if result.vehicle_status in ("inserted", "updated"):
            self.vehicles_written += 1
        for kind in result.conflicts:
            self.conflicts.append({
                "kind": kind,
                "staging_id": result.staging_id,
                "external_lot_id": result.external_lot_id,
                "constraint": result.constraint_name,
            })

    def merge(self, other: "UpsertReport") -> None:
        """Fold a committed chunk's tally into this report."""
        for name in ("vehicles_written", "lots_written", "lots_inserted", "lots_updated",
                     "unchanged", "stale", "failed", "superseded"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.conflicts.extend(other.conflicts)
        self.skipped.extend(other.skipped)

    def counts(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "vehicles_written": self.vehicles_written,
            "lots_inserted": self.lots_inserted,
            "lots_updated": self.lots_updated,
            "unchanged": self.unchanged,
            "stale": self.stale,
            "failed": self.failed,
            "superseded": self.superseded,
            "rolled_back": self.rolled_back,
            "conflicts": len(self.conflicts),
        }
