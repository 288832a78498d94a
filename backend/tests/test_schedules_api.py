"""
週排班 API 測試（TestClient；遠端與本機皆為記憶體 SQLite）。
覆蓋：週別查詢、條目新增 / 修改 / 刪除的狀態碼、週別驗證、統計與計薪、清潔員規則、同步狀態與管理端點。
"""
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from schedule_sync.database import init_local_db, init_remote_db, make_engine, make_sessionmaker
from schedule_sync.main import build_services
from schedule_sync.routers import schedules

BASE = "/api/schedule"
WEEK = "2025-01-13"


@asynccontextmanager
async def _lifespan(app: FastAPI):
    remote = make_engine("sqlite+aiosqlite://")
    local = make_engine("sqlite+aiosqlite://")
    await init_remote_db(remote)
    await init_local_db(local)
    engine, ingestor = await build_services(make_sessionmaker(remote), make_sessionmaker(local))
    app.state.engine = engine
    app.state.ingestor = ingestor
    await ingestor.start()
    await ingestor.wait_idle()
    yield
    await ingestor.stop()
    await engine.drain()
    await engine.store.flush()
    await remote.dispose()
    await local.dispose()


@pytest.fixture
def client():
    app = FastAPI(lifespan=_lifespan)
    app.include_router(schedules.router)
    with TestClient(app) as c:
        yield c


def _payload(**kw):
    data = {
        "id": str(uuid.uuid4()),
        "clientName": "大安物業",
        "buildingName": "A 棟",
        "cleanerNames": ["Amy"],
        "hours": 4,
        "date": "2025-01-15",
        "paymentType": "hourly",
        "hourlyRate": 20,
    }
    data.update(kw)
    return data


def _create(client, week_id=WEEK, **kw):
    r = client.post(f"{BASE}/weeks/{week_id}/entries", json=_payload(**kw))
    assert r.status_code == 201, r.text
    return r.json()


def test_week_id_endpoints(client):
    r = client.get(f"{BASE}/week-id", params={"date": "2025-01-19"})
    assert r.status_code == 200
    assert r.json() == {"week_id": "2025-01-13"}
    assert client.get(f"{BASE}/week-id", params={"date": "not-a-date"}).status_code == 400

    current = client.get(f"{BASE}/week-id/current").json()["week_id"]
    r = client.get(f"{BASE}/weeks/{current}/entries")
    assert r.status_code == 200


def test_create_entry_uses_week_of_date(client):
    created = _create(client, week_id="2025-01-06")
    assert created["weekId"] == WEEK
    assert created["day"] == "wednesday"
    assert created["cleanerName"] == "Amy"

    entries = client.get(f"{BASE}/weeks/{WEEK}/entries").json()
    assert [e["id"] for e in entries] == [created["id"]]
    assert client.get(f"{BASE}/weeks/2025-01-06/entries").json() == []


def test_invalid_week_and_entry_return_400(client):
    assert client.get(f"{BASE}/weeks/2025-01-14/entries").status_code == 400
    r = client.post(f"{BASE}/weeks/{WEEK}/entries", json=_payload(clientName=""))
    assert r.status_code == 400


def test_update_and_delete_entry(client):
    created = _create(client)
    r = client.patch(f"{BASE}/weeks/{WEEK}/entries/{created['id']}", json={"hours": 6, "status": "completed"})
    assert r.status_code == 200
    assert r.json()["hours"] == 6
    assert r.json()["status"] == "completed"

    assert client.patch(f"{BASE}/weeks/{WEEK}/entries/{uuid.uuid4()}", json={"hours": 1}).status_code == 404
    assert client.delete(f"{BASE}/weeks/{WEEK}/entries/{uuid.uuid4()}").status_code == 404

    assert client.delete(f"{BASE}/weeks/{WEEK}/entries/{created['id']}").status_code == 204
    assert client.get(f"{BASE}/weeks/{WEEK}/entries").json() == []


def test_week_stats_and_payment_summary(client):
    _create(client, hours=10, hourlyRate=20)
    _create(client, paymentType="flat_rate", flatRateAmount=120, cleanerNames=["Amy", "Ben"], date="2025-01-16")

    stats = client.get(f"{BASE}/weeks/{WEEK}/stats").json()
    assert stats["total_entries"] == 2
    assert Decimal(str(stats["total_hourly_amount"])) == Decimal("200")
    assert Decimal(str(stats["total_flat_rate_amount"])) == Decimal("120")
    assert Decimal(str(stats["workers"]["Ben"]["flat_rate_pay"])) == Decimal("60")

    summary = client.get(f"{BASE}/weeks/{WEEK}/payment-summary").json()
    assert summary["total_jobs"] == 2
    assert Decimal(str(summary["total_amount"])) == Decimal("320")

    payroll = client.get(f"{BASE}/payroll", params={"week_ids": [WEEK], "cleaner_names": ["Amy"]}).json()
    assert list(payroll) == ["Amy"]
    assert Decimal(str(payroll["Amy"]["total_pay"])) == Decimal("260")


def test_cleaner_and_payment_endpoints(client):
    created = _create(client)
    base = f"{BASE}/weeks/{WEEK}/entries/{created['id']}"

    r = client.post(f"{base}/cleaners", json={"cleanerName": "Ben"})
    assert r.status_code == 200
    assert r.json()["cleanerNames"] == ["Amy", "Ben"]

    r = client.delete(f"{base}/cleaners/Amy")
    assert r.json()["cleanerNames"] == ["Ben"]
    assert client.delete(f"{base}/cleaners/Ben").status_code == 400

    r = client.put(f"{base}/payment", json={"paymentType": "flat_rate", "amount": 150})
    assert r.status_code == 200
    assert r.json()["paymentType"] == "flat_rate"
    assert r.json()["flatRateAmount"] == 150
    assert client.put(f"{base}/payment", json={"paymentType": "hourly", "amount": -1}).status_code == 422


def test_bulk_endpoints(client):
    a = _create(client)
    b = _create(client, date="2025-01-14")
    missing = str(uuid.uuid4())

    r = client.post(
        f"{BASE}/weeks/{WEEK}/entries/bulk-update",
        json={"entryIds": [a["id"], b["id"], missing], "updates": {"status": "completed"}},
    )
    assert r.status_code == 200
    assert sorted(e["id"] for e in r.json()) == sorted([a["id"], b["id"]])

    r = client.post(f"{BASE}/weeks/{WEEK}/entries/bulk-delete", json={"entryIds": [a["id"], missing]})
    assert r.json() == {"affected": 1}

    r = client.delete(f"{BASE}/weeks/{WEEK}")
    assert r.json() == {"affected": 1}


def test_replace_week(client):
    a = _create(client)
    _create(client, date="2025-01-14")
    r = client.put(f"{BASE}/weeks/{WEEK}/entries", json=[dict(_payload(), id=a["id"], hours=8)])
    assert r.status_code == 200
    assert [(e["id"], e["hours"]) for e in r.json()] == [(a["id"], 8)]


def test_sync_cache_and_admin_endpoints(client):
    _create(client)
    status = client.get(f"{BASE}/sync/status").json()
    assert status["realtime_state"] == "subscribed"
    assert status["is_connected"] is True

    v1 = client.post(f"{BASE}/cache/invalidate").json()["cache_version"]
    v2 = client.post(f"{BASE}/cache/invalidate").json()["cache_version"]
    assert v2 == v1 + 1

    r = client.post(f"{BASE}/sync/resync")
    assert r.status_code == 200
    assert r.json()["entries"] >= 1
    assert client.post(f"{BASE}/sync/retry").json() == {"retried": 0}

    r = client.get(f"{BASE}/change-logs", params={"limit": 10})
    assert r.status_code == 200
    assert isinstance(r.json(), list)

    assert client.post(f"{BASE}/admin/reset").status_code == 204
    assert client.get(f"{BASE}/weeks/{WEEK}/entries").json() == []


def test_entry_routes_reject_non_monday_week(client):
    created = _create(client)
    bad = f"{BASE}/weeks/2025-01-14"
    entry = f"{bad}/entries/{created['id']}"
    assert client.patch(entry, json={"hours": 6}).status_code == 400
    assert client.delete(entry).status_code == 400
    assert client.post(f"{bad}/entries/bulk-update", json={"entryIds": [created["id"]], "updates": {"hours": 1}}).status_code == 400
    assert client.post(f"{bad}/entries/bulk-delete", json={"entryIds": [created["id"]]}).status_code == 400
    assert client.post(f"{entry}/cleaners", json={"cleanerName": "Ben"}).status_code == 400
    assert client.delete(f"{entry}/cleaners/Amy").status_code == 400
    assert client.put(f"{entry}/payment", json={"paymentType": "hourly", "amount": 30}).status_code == 400

    entries = client.get(f"{BASE}/weeks/{WEEK}/entries").json()
    assert [(e["id"], e["hours"], e["cleanerNames"]) for e in entries] == [(created["id"], 4, ["Amy"])]
