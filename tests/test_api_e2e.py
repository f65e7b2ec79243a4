import sqlite3
from datetime import timedelta

from conftest import START
from student_bank import db


def _parcel(owner, kind="bill", amount=-50, interval="weekly", name="Phone", category="Utilities", date=None):
    return {"parcel": [{"memberName": owner}, kind, amount, interval, name, category, date]}


def test_health(app_client):
    r = app_client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_create_bill_and_status_for_two_owners(app_client, make_account):
    make_account("alice")
    make_account("bob")

    a = app_client.post("/bills", json=_parcel("alice"))
    b = app_client.post("/bills", json=_parcel("bob", kind="payment", amount=300, interval="bi-weekly"))
    assert a.status_code == 200, a.text
    assert b.status_code == 200, b.text
    assert a.json()["amount"] == -50.0
    assert b.json()["amount"] == 300.0
    assert a.json()["nextExecution"] == (START + timedelta(days=7)).isoformat()

    status = app_client.get("/scheduler/status").json()
    assert status["totalScheduledJobs"] == 2
    keys = {job["key"] for job in status["jobs"]}
    assert keys == {a.json()["key"], b.json()["key"]}
    for job in status["jobs"]:
        owner, kind, job_id = job["key"].split("-")
        assert (owner, kind, job_id) == (job["ownerId"], job["kind"], job["jobId"])
        assert job["status"] == "scheduled"


def test_user_jobs_grouped_by_kind(app_client, make_account):
    make_account("alice")
    app_client.post("/bills", json=_parcel("alice"))
    app_client.post("/bills", json=_parcel("alice", kind="payment", amount=100))

    r = app_client.get("/scheduler/user/alice")
    assert r.status_code == 200
    body = r.json()
    assert len(body["bills"]) == 1 and len(body["payments"]) == 1
    assert body["bills"][0]["status"] == "scheduled"
    assert body["bills"][0]["lastApplied"] is None


def test_unknown_user_is_404(app_client):
    assert app_client.get("/scheduler/user/nobody").status_code == 404


def test_create_bill_validation_errors(app_client, make_account, db_conn):
    make_account("alice")
    assert app_client.post("/bills", json=_parcel("alice", interval="daily")).status_code == 422
    assert app_client.post("/bills", json=_parcel("alice", amount="lots")).status_code == 422
    assert app_client.post("/bills", json=_parcel("alice", kind="transfer")).status_code == 422
    assert app_client.post("/bills", json=_parcel("alice", amount="1e30")).status_code == 422
    assert app_client.post("/bills", json=_parcel("alice", amount="0.001")).status_code == 422
    assert app_client.post("/bills", json={"parcel": ["alice"]}).status_code == 422
    assert app_client.post("/bills", json=_parcel("ghost")).status_code == 404
    assert db_conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0


def test_past_dated_bill_is_armed_immediately(app_client, runtime, make_account, balance_of):
    make_account("alice", "100")
    date = (START - timedelta(days=8)).isoformat()
    r = app_client.post("/bills", json=_parcel("alice", amount=-10, date=date))
    assert r.status_code == 200, r.text

    runtime.scheduler.run_pending()
    assert str(balance_of("alice")) == "90.00"


def test_delete_bill_stops_tracking(app_client, make_account):
    make_account("alice")
    created = app_client.post("/bills", json=_parcel("alice")).json()

    d = app_client.delete(f"/bills/alice/bill/{created['jobId']}")
    assert d.status_code == 200
    assert d.json()["deleted"] is True
    assert app_client.get("/scheduler/status").json()["totalScheduledJobs"] == 0
    assert app_client.delete(f"/bills/alice/bill/{created['jobId']}").status_code == 404


def test_manual_catchup_and_stats(app_client, runtime, make_account):
    make_account("alice", "100")
    runtime.store.create_job("alice", "bill", 10, "weekly", start_time=START - timedelta(days=8))

    r = app_client.post("/scheduler/catchup")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["totalProcessed"] == 1

    stats = app_client.get("/scheduler/catchup/stats", params={"days": 7}).json()
    assert stats["totalCatchupTransactions"] == 1
    assert stats["users"] == ["alice"]


def test_lesson_timers_roundtrip(app_client):
    missing = app_client.post("/api/timers", json={"studentId": "s1", "lessonId": "l1"})
    assert missing.status_code == 400

    assert app_client.get("/api/timers", params={"studentId": "s1", "lessonId": "l1"}).status_code == 404

    saved = app_client.post("/api/timers", json={"studentId": "s1", "lessonId": "l1", "elapsedTime": 42})
    assert saved.status_code == 200
    assert saved.json()["success"] is True
    app_client.post("/api/timers", json={"studentId": "s1", "lessonId": "l1", "elapsedTime": 90.5})

    r = app_client.get("/api/timers", params={"studentId": "s1", "lessonId": "l1"})
    assert r.status_code == 200
    assert r.json() == {"elapsedTime": 90.5}
    assert app_client.get("/api/timers", params={"studentId": "s1"}).status_code == 400


def test_storage_outage_returns_503(app_client, make_account, monkeypatch):
    make_account("alice")

    def locked_connection(db_path):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "get_connection", locked_connection)
    resp = app_client.get("/scheduler/user/alice")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "Storage unavailable, try again shortly"
