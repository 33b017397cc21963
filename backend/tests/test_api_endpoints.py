"""Tests for the ledger API endpoints against an in-memory LedgerManager."""

import time

import pytest
from api import get_ledger_manager, router
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.ledger.ledger_manager import LedgerManager
from core.ledger.ledger_store import InMemoryLedgerStore

# Yesterday 00:00 UTC
BASE_TS = (int(time.time()) // 86400 - 1) * 86400
DEVICE = "battery-1"


@pytest.fixture
def manager():
    return LedgerManager(store=InMemoryLedgerStore())


@pytest.fixture
def client(manager):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_ledger_manager] = lambda: manager
    return TestClient(app)


def _sample(offset, input_raw, output_raw, **extra):
    return {
        "timestampSec": BASE_TS + offset,
        "inputRaw": input_raw,
        "outputRaw": output_raw,
        "divisorRawPerKwh": 10,
        **extra,
    }


@pytest.fixture
def flushed(client):
    """Post one hour of samples and return the flushing response body."""
    client.post(f"/api/devices/{DEVICE}/samples", json=_sample(0, 1000, 500, currentPrice=0.25))
    client.post(f"/api/devices/{DEVICE}/samples", json=_sample(1800, 1005, 500))
    response = client.post(f"/api/devices/{DEVICE}/samples", json=_sample(3600, 1010, 525))
    assert response.status_code == 200
    return response.json()


def test_post_sample_initializes(client):
    response = client.post(f"/api/devices/{DEVICE}/samples", json=_sample(0, 1000, 500))

    assert response.status_code == 200
    body = response.json()
    assert body["deviceId"] == DEVICE
    assert body["reason"] == "initialized"
    assert body["state"]["lastTimestampSec"] == BASE_TS
    assert body["flush"] is None
    assert body["entries"] == []


def test_post_sample_flushes(flushed):
    assert flushed["reason"] == "time_interval"
    assert flushed["flush"]["deltaInputRaw"] == 10
    charging, discharging = flushed["entries"]
    assert charging["type"] == "charging"
    assert charging["energyAmount"]["value"] == 1.0
    assert charging["priceAtTime"]["value"] == 0.25
    assert discharging["energyAmount"]["value"] == -2.5


@pytest.mark.parametrize(
    "body",
    [
        {"timestampSec": 1, "inputRaw": 1},
        {**_sample(0, 1, 1), "unexpected": True},
        _sample(0, "not-a-number", 1),
    ],
)
def test_invalid_sample_is_rejected(client, body):
    response = client.post(f"/api/devices/{DEVICE}/samples", json=body)

    assert response.status_code == 400


def test_list_devices(client, flushed):
    assert client.get("/api/devices").json() == {"devices": [DEVICE]}


def test_accumulator(client, flushed):
    response = client.get(f"/api/devices/{DEVICE}/accumulator")

    assert response.status_code == 200
    assert response.json()["accStartTimestampSec"] == BASE_TS + 3600


def test_accumulator_unknown_device(client):
    assert client.get("/api/devices/nobody/accumulator").status_code == 404


def test_entries(client, flushed):
    body = client.get(f"/api/devices/{DEVICE}/entries").json()

    assert len(body["entries"]) == 2
    assert body["entries"][0]["calculationMethod"] == "flush_meter_delta"


def test_daily_stats(client, flushed):
    body = client.get(
        f"/api/devices/{DEVICE}/daily-stats", params={"includeEvents": "true"}
    ).json()

    (day,) = body["days"]
    assert body["currency"] == "EUR"
    assert day["eventCount"] == 2
    assert len(day["events"]) == 2
    assert day["totalSavings"]["value"] == 0.62
    assert day["auditInfo"]["validationFailures"] == 0


def test_daily_stats_without_events(client, flushed):
    (day,) = client.get(f"/api/devices/{DEVICE}/daily-stats").json()["days"]

    assert day["eventCount"] == 2
    assert day["events"] == []


def test_today(client, flushed):
    body = client.get(f"/api/devices/{DEVICE}/today").json()

    assert set(body) == {"deviceId", "today", "breakdown"}
    assert "netProfit" in body["breakdown"]


def test_summary(client, flushed):
    body = client.get(f"/api/devices/{DEVICE}/summary").json()

    assert body["summary"]["totalEvents"] == 2
    assert body["summary"]["averagePrice"] == 0.25
    assert body["audit"]["invalidEntries"] == 0
    assert "financialCalculatorStats" in body["audit"]


def test_audit_trail(client, flushed):
    body = client.get(
        f"/api/devices/{DEVICE}/audit-trail",
        params={"start": BASE_TS, "end": BASE_TS + 86400},
    ).json()

    assert len(body["records"]) == 2
    assert body["records"][0]["energyValid"] is True
    assert body["records"][0]["entry"]["type"] == "charging"


def test_audit_trail_rejects_empty_window(client):
    response = client.get(
        f"/api/devices/{DEVICE}/audit-trail", params={"start": BASE_TS, "end": BASE_TS}
    )

    assert response.status_code == 400


def test_prices(client):
    response = client.post(f"/api/devices/{DEVICE}/prices", json={"ts": BASE_TS, "price": 0.3})

    assert response.status_code == 200
    assert response.json()["priceHistory"] == [{"ts": BASE_TS, "price": 0.3}]
    assert client.get(f"/api/devices/{DEVICE}/prices").json()["priceHistory"] == [
        {"ts": BASE_TS, "price": 0.3}
    ]


def test_invalid_price_request(client):
    response = client.post(f"/api/devices/{DEVICE}/prices", json={"price": 0.3})

    assert response.status_code == 400


def test_cleanup(client, flushed):
    device_report = client.post(f"/api/devices/{DEVICE}/cleanup").json()["report"]
    all_reports = client.post("/api/cleanup").json()["reports"]

    assert device_report["totalEntries"] == 2
    assert device_report["entriesRemoved"] == 0
    assert set(all_reports) == {DEVICE}


def test_reset(client, flushed):
    body = client.post(f"/api/devices/{DEVICE}/reset").json()

    assert body == {"message": "Statistics reset successfully", "entriesRemoved": 2}
    assert client.get(f"/api/devices/{DEVICE}/entries").json()["entries"] == []


def test_calculator_audit(client, flushed):
    body = client.get("/api/calculator/audit", params={"limit": 1}).json()

    assert body["statistics"]["totalCalculations"] >= 2
    assert len(body["recent"]) == 1
    assert body["memory"]["capacity"] == 500


def test_settings(client, manager):
    body = client.get("/api/settings").json()
    assert body["accumulator"]["flushIntervalMinutes"] == 60

    response = client.post(
        "/api/settings", json={"accumulator": {"flushIntervalMinutes": 15}}
    )

    assert response.status_code == 200
    assert manager.accumulator_settings.flush_interval_minutes == 15


def test_invalid_settings(client):
    response = client.post("/api/settings", json={"statistics": {"retentionDays": 0}})

    assert response.status_code == 400


def test_zero_divisor_sample_is_rejected(client):
    response = client.post(
        f"/api/devices/{DEVICE}/samples", json={**_sample(0, 1000, 500), "divisorRawPerKwh": 0}
    )

    assert response.status_code == 400
    assert "Divisor" in response.json()["detail"]
    assert client.get(f"/api/devices/{DEVICE}/accumulator").status_code == 404


def test_calculator_cleanup(client, flushed):
    body = client.post("/api/calculator/cleanup").json()

    assert body["cleanupPerformed"] is False
    assert body["entriesRemoved"] == 0
    assert body["memoryAfter"]["auditTrailSize"] == body["memoryBefore"]["auditTrailSize"]
