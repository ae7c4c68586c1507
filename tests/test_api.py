# tests/test_api.py
import pytest
from fastapi.testclient import TestClient

from lotledger import resolver
from lotledger.db import get_db
from lotledger.main import app

from factories import VIN_A, VIN_B, lot_row, utc


@pytest.fixture
def client(db):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def populated(pipeline, db):
    pipeline(
        (utc(2025, 1, 10), [lot_row("L1", vin=VIN_A), lot_row("L2", vin=VIN_B), lot_row("L4", vin="N/A")]),
        (utc(2025, 1, 11), [lot_row("L2", vin=VIN_B, bid="1700"), lot_row("L4", vin="N/A")]),
    )
    resolver.resolve(db, as_of=utc(2025, 1, 14))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_snapshot_stats(client, populated):
    response = client.get("/stats/snapshots", params={"limit": 1})
    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    assert body[0]["rows_admitted"] == 2
    assert body[0]["declared_row_count"] == 2
    assert body[0]["parse_errors"] == 0
    assert body[0]["unknown_rate"] == 0.0


def test_event_stats(client, populated):
    response = client.get("/stats/events")
    assert response.json() == {"disappeared": 1, "updated": 1}


def test_outcome_stats(client, populated):
    body = client.get("/stats/outcomes").json()
    assert {"outcome": "sold", "confidence": 0.85, "count": 1} in body["outcomes"]
    assert {"outcome": "unknown", "confidence": None, "count": 2} in body["outcomes"]
    assert body["lots_without_vehicle"] == {"placeholder": 1}
    assert body["conflicts"] == [{"kind": "normalization_rejected", "resolution": "lot_without_vehicle", "count": 2}]


def test_lot_detail_includes_timeline(client, populated):
    response = client.get("/lots/L1")
    assert response.status_code == 200
    body = response.json()
    assert body["lot"]["outcome"] == "sold"
    assert body["lot"]["vehicle_id"] == VIN_A
    assert [e["event_type"] for e in body["events"]] == ["disappeared"]


def test_unknown_lot_is_404(client):
    response = client.get("/lots/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Lot not found"
