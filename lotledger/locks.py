# lotledger/locks.py
"""Stage locks held in the shared store.

One row per held lock in ``run_locks``. A second run of the same stage is
rejected while the row exists and has not expired; an expired row is taken
over. The row is removed on every exit path of ``stage_lock``.
"""
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import event, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import RunLock
from .results import LockUnavailable
from .utils import logger, utcnow


@dataclass
class LockSummary:
    lock_key: str = ""
    owner: str = ""
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def acquire(db: Session, lock_key: str, owner: str, ttl_minutes: int) -> LockSummary:
    now = utcnow()
    expires_at = now + timedelta(minutes=ttl_minutes)
    existing = db.get(RunLock, lock_key)
    if existing is not None:
        if existing.expires_at > now:
            raise LockUnavailable(lock_key, existing.owner, existing.expires_at)
        logger.warning("lock_takeover key=%s stale_owner=%s expired_at=%s",
                       lock_key, existing.owner, existing.expires_at.isoformat())
        existing.owner = owner
        existing.acquired_at = now
        existing.expires_at = expires_at
    else:
        db.add(RunLock(lock_key=lock_key, owner=owner, acquired_at=now, expires_at=expires_at))
    try:
        db.commit()
    except IntegrityError:
        # another run inserted the row between our read and our commit
        db.rollback()
        holder = db.get(RunLock, lock_key)
        raise LockUnavailable(lock_key, holder.owner if holder else "unknown",
                              holder.expires_at if holder else expires_at)
    logger.info("lock_acquired key=%s owner=%s", lock_key, owner)
    return LockSummary(lock_key, owner, now, expires_at)


def release(db: Session, lock_key: str, owner: str) -> None:
    db.query(RunLock).filter(RunLock.lock_key == lock_key, RunLock.owner == owner).delete()
    db.commit()
    logger.info("lock_released key=%s owner=%s", lock_key, owner)


def _heartbeat(lock_key: str, owner: str, ttl_minutes: int):
    """Session listener that pushes the lock expiry forward on every commit."""
    def extend(session):
        expires_at = utcnow() + timedelta(minutes=ttl_minutes)
        result = session.execute(
            update(RunLock)
            .where(RunLock.lock_key == lock_key, RunLock.owner == owner)
            .values(expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("lock_lost key=%s owner=%s", lock_key, owner)
    return extend


@contextmanager
def stage_lock(db: Session, lock_key: str, owner: Optional[str] = None, ttl_minutes: Optional[int] = None):
    """Hold ``lock_key`` for the duration of the block.

    Every commit made through ``db`` while the block runs renews the lock, so
    the TTL bounds the time between commits rather than the whole run.
    """
    owner = owner or default_owner()
    ttl_minutes = ttl_minutes or settings.LOCK_TTL_MINUTES
    summary = acquire(db, lock_key, owner, ttl_minutes)
    extend = _heartbeat(lock_key, owner, ttl_minutes)
    event.listen(db, "before_commit", extend)
    try:
        yield summary
    except BaseException:
        db.rollback()
        raise
    finally:
        event.remove(db, "before_commit", extend)
        release(db, lock_key, owner)


def list_locks(db: Session) -> List[LockSummary]:
    rows = db.query(RunLock).order_by(RunLock.lock_key).all()
    return [LockSummary(r.lock_key, r.owner, r.acquired_at, r.expires_at) for r in rows]
