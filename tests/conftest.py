# tests/conftest.py
import pytest
from sqlalchemy.orm import sessionmaker

from lotledger import capture, diff, services
from lotledger.db import Base, init_db, make_engine

from factories import build_csv


@pytest.fixture
def engine():
    # fresh in-memory database per test
    eng = make_engine("sqlite://")
    init_db(eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def ingest(db):
    def _ingest(rows, captured_at, header=None, **kwargs):
        return capture.ingest_bytes(db, build_csv(rows, header), captured_at=captured_at, **kwargs)
    return _ingest


@pytest.fixture
def pipeline(db, ingest):
    """Ingest each snapshot, upsert it and diff every pending pair."""
    def _run(*snapshots):
        reports = []
        for captured_at, rows in snapshots:
            reports.append(ingest(rows, captured_at))
            services.upsert_batch(db)
        diff.run_auto(db)
        return reports
    return _run
