# lotledger/cli.py
"""Command surface: one command per stage, each safe to re-run.

Exit codes: 0 on success (including "already done" no-ops), 1 on fatal
errors, 2 when the stage lock is held by another run.
"""
import sys
from contextlib import contextmanager
from datetime import datetime

import click
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import capture, crud, diff, locks, metrics, outcomes, resolver, services
from .config import settings
from .db import init_db, make_engine
from .results import LedgerError, LockUnavailable
from .utils import as_utc, logger, retry

EXIT_FATAL = 1
EXIT_LOCKED = 2


def _parse_when(ctx, param, value):
    if value is None:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}")


@retry(OperationalError, tries=3, delay=1, backoff=2)
def _check_connection(engine):
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def _echo_counts(label: str, counts) -> None:
    click.echo(f"{label}: " + " ".join(f"{k}={v}" for k, v in counts.items()))


@contextmanager
def _session(ctx):
    engine = ctx.obj["engine"]
    db = Session(bind=engine, autoflush=False)
    try:
        yield db
    finally:
        db.close()


@contextmanager
def _stage(ctx, lock_key: str):
    """Open a session, take the stage lock, map failures to exit codes."""
    with _session(ctx) as db:
        try:
            with locks.stage_lock(db, lock_key):
                yield db
        except LockUnavailable as e:
            click.echo(f"rejected: {e}", err=True)
            sys.exit(EXIT_LOCKED)
        except (LedgerError, SQLAlchemyError) as e:
            logger.error("stage_failed lock=%s error=%s", lock_key, e)
            click.echo(f"failed: {e}", err=True)
            sys.exit(EXIT_FATAL)


@click.group()
@click.option("--database-url", default=None, help="Overrides DATABASE_URL / POSTGRES_URL")
@click.pass_context
def cli(ctx, database_url):
    """Snapshot ledger: ingest, upsert, diff and resolve auction lots."""
    url = database_url or settings.DATABASE_URL
    if not url:
        raise click.UsageError("DATABASE_URL (or POSTGRES_URL) is not set")
    engine = make_engine(url)
    try:
        _check_connection(engine)
    except OperationalError as e:
        click.echo(f"failed: cannot connect to database: {e}", err=True)
        sys.exit(EXIT_FATAL)
    ctx.obj = {"engine": engine}


@cli.command("init-db")
@click.pass_context
def init_db_cmd(ctx):
    """Create all tables."""
    init_db(ctx.obj["engine"])
    click.echo("init-db: tables created")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--source", default=None, help="Source name (default: SOURCE_NAME)")
@click.option("--captured-at", default=None, callback=_parse_when, help="ISO 8601 capture time")
@click.option("--dry-run", is_flag=True, default=False)
@click.pass_context
def ingest(ctx, path, source, captured_at, dry_run):
    """Capture a snapshot file and extract its staging records."""
    source = source or settings.SOURCE_NAME
    with _stage(ctx, f"ingest:{source}") as db:
        report = capture.run_ingest(db, path, source=source, captured_at=captured_at, dry_run=dry_run)
    if report.skipped:
        click.echo(f"ingest: already ingested as snapshot {report.snapshot_id}; nothing to do")
        return
    _echo_counts(f"ingest snapshot={report.snapshot_id} dry_run={dry_run}", report.counts())
    if report.column_changes:
        click.echo(f"  column changes: added={report.column_changes['added']} "
                   f"removed={report.column_changes['removed']}")
    for w in report.warnings[:10]:
        click.echo(f"  warning: {w}")


@cli.command()
@click.option("--limit", type=int, default=None, help="Process at most N pending rows")
@click.option("--snapshot", "snapshot_ref", default=None, help="Snapshot id or hash prefix")
@click.option("--dry-run", is_flag=True, default=False)
@click.pass_context
def upsert(ctx, limit, snapshot_ref, dry_run):
    """Reconcile pending staging records into vehicles and lots."""
    with _stage(ctx, "upsert") as db:
        snapshot_id = crud.resolve_snapshot(db, snapshot_ref).id if snapshot_ref else None
        report = services.upsert_pending(db, snapshot_id=snapshot_id, limit=limit, dry_run=dry_run)
    _echo_counts(f"upsert dry_run={dry_run}", report.counts())
    for s in report.skipped[:10]:
        click.echo(f"  failed row staging_id={s['staging_id']} lot={s['external_lot_id']} "
                   f"constraint={s['constraint']}")
    if report.fatal:
        click.echo(f"failed: {report.fatal}", err=True)
        sys.exit(EXIT_FATAL)


def _snapshot_source(ctx, ref: str) -> str:
    """Source of the snapshot ``ref`` points at; the diff lock is per source."""
    with _session(ctx) as db:
        try:
            return crud.resolve_snapshot(db, ref).source
        except LedgerError as e:
            click.echo(f"failed: {e}", err=True)
            sys.exit(EXIT_FATAL)


@cli.command("diff")
@click.option("--auto", is_flag=True, default=False, help="Diff every undiffed consecutive pair")
@click.option("--previous", "previous_ref", default=None)
@click.option("--current", "current_ref", default=None)
@click.option("--source", default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--force", is_flag=True, default=False, help="Recompute a pair that was already diffed")
@click.pass_context
def diff_cmd(ctx, auto, previous_ref, current_ref, source, dry_run, force):
    """Compare snapshots and append events to the ledger."""
    if not auto and not (previous_ref and current_ref):
        raise click.UsageError("use --auto or both --previous and --current")
    if auto:
        source = source or settings.SOURCE_NAME
    else:
        source = _snapshot_source(ctx, current_ref)
    with _stage(ctx, f"diff:{source}") as db:
        reports = diff.run_recorded(db, previous_ref, current_ref, auto=auto,
                                    source=source if auto else None, dry_run=dry_run, force=force)
    if not reports:
        click.echo("diff: no undiffed snapshot pairs")
    for r in reports:
        if r.skipped:
            click.echo(f"diff {r.previous_snapshot_id} -> {r.current_snapshot_id}: already diffed; nothing to do")
            continue
        counts = dict(r.counts(), inserted=r.inserted)
        _echo_counts(f"diff {r.previous_snapshot_id} -> {r.current_snapshot_id} dry_run={dry_run}", counts)


@cli.command("resolve-outcomes")
@click.option("--grace-hours", type=float, default=None)
@click.option("--approval-days", type=float, default=None)
@click.option("--lot", default=None, help="Only this external lot id")
@click.option("--as-of", default=None, callback=_parse_when, help="Evaluation time (ISO 8601)")
@click.option("--dry-run", is_flag=True, default=False)
@click.pass_context
def resolve_outcomes(ctx, grace_hours, approval_days, lot, as_of, dry_run):
    """Infer lot outcomes from the event ledger."""
    config = outcomes.ResolverConfig.from_settings(grace_hours=grace_hours, approval_days=approval_days)
    with _stage(ctx, "resolve") as db:
        report = resolver.run_resolve(db, as_of=as_of, config=config, lot=lot, dry_run=dry_run)
    _echo_counts(f"resolve-outcomes as_of={report.as_of.isoformat()} dry_run={dry_run}", report.counts())
    for u in report.updated[:20]:
        click.echo(f"  {u['external_lot_id']}: {u['from']} -> {u['to']} ({u['confidence']:.2f}, {u['method']})")


@cli.command()
@click.pass_context
def stats(ctx):
    """Print the monitoring views."""
    with _session(ctx) as db:
        data = metrics.summary(db)
        held = locks.list_locks(db)
    for s in data["snapshots"]:
        click.echo(
            f"snapshot {s['snapshot_id']} captured={s['captured_at'].isoformat()} "
            f"declared={s['declared_row_count']} admitted={s['rows_admitted']} staged={s['keys_extracted']} "
            f"parse_errors={s['parse_errors']} unknown_rate={s['unknown_rate']}%"
        )
    _echo_counts("events", data["events"])
    for o in data["outcomes"]:
        click.echo(f"outcome {o['outcome']} confidence={o['confidence']} lots={o['count']}")
    _echo_counts("lots without vehicle", data["lots_without_vehicle"])
    for c in data["conflicts"]:
        click.echo(f"conflict {c['kind']} ({c['resolution']}): {c['count']}")
    for lock in held:
        click.echo(f"lock {lock.lock_key} owner={lock.owner} expires={lock.expires_at.isoformat()}")


if __name__ == "__main__":
    cli()
