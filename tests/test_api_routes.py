from datetime import date
import json

import pytest
from fastapi.testclient import TestClient

import app.api.routes as routes
from app.api.dependencies import get_repository
from app.config import get_settings
from app.jobs.scan_runner import JOB_LOCK, ScanRunResult, ScanRunSummary
from app.main import app
from app.services.repository import JsonDatasetRepository
from src.polltrend.contracts import Dataset, ElectionCycle, Scope


@pytest.fixture
def data_dir(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("INTERNAL_JOB_TOKEN", "dev-internal-token")
    monkeypatch.setenv("REQUEST_DELAY_SEC", "0")
    get_settings.cache_clear()
    yield tmp_path
    app.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest.fixture
def repo(data_dir, record_factory) -> JsonDatasetRepository:
    repository = JsonDatasetRepository(
        dataset_path=data_dir / "polling-data.json",
        cursor_path=data_dir / "scan-cursor.json",
        national_export_path=data_dir / "polling-data-national.json",
    )
    day = date(2021, 8, 30)
    polls = [
        record_factory("1", day, percentage=4.0, pollster="Norstat for NRK Agder"),
        record_factory("2", day, percentage=6.0, pollster="Norstat for NRK Rogaland"),
        record_factory("3", day, percentage=5.0, pollster="Norstat for NRK Nordland"),
        record_factory("4", date(2021, 8, 20), percentage=9.0, scope=Scope.REGIONAL, region="Oslo", rule=2),
    ]
    for poll in polls:
        poll.days_until_election = (date(2021, 9, 13) - poll.date).days
    regional_only = record_factory("5", date(2017, 6, 1), scope=Scope.REGIONAL, region="Bergen", rule=2)
    regional_only.days_until_election = 102
    repository.save_dataset(
        Dataset(
            elections={
                2021: ElectionCycle(year=2021, election_date=date(2021, 9, 13), actual_result=3.9, polls=polls),
                2017: ElectionCycle(year=2017, election_date=date(2017, 9, 11), polls=[regional_only]),
            }
        )
    )
    app.dependency_overrides[get_repository] = lambda: repository
    return repository


def test_health_endpoints(data_dir):
    client = TestClient(app)

    assert client.get("/health").json() == {"status": "ok"}
    store = client.get("/health/store").json()
    assert store["dataset_present"] is False


def test_elections_contract_fields(repo):
    client = TestClient(app)

    res = client.get("/api/v1/elections")
    assert res.status_code == 200
    body = res.json()
    assert sorted(body["elections"]) == ["2017", "2021"]
    oslo = next(poll for poll in body["elections"]["2021"]["polls"] if poll["id"] == "4")
    assert (oslo["scope"], oslo["region"], oslo["scope_strength"]) == ("regional", "Oslo", "structural")
    assert body["elections"]["2021"]["polls"][0]["region"] is None

    national = client.get("/api/v1/elections/national").json()
    assert list(national["elections"]) == ["2021"]
    assert [poll["id"] for poll in national["elections"]["2021"]["polls"]] == ["1", "2", "3"]


def test_single_cycle_and_missing_year(repo):
    client = TestClient(app)

    res = client.get("/api/v1/elections/2021")
    assert res.status_code == 200
    assert res.json()["actual_result"] == 3.9
    assert client.get("/api/v1/elections/2013").status_code == 404


def test_trend_endpoint(repo):
    client = TestClient(app)

    res = client.get("/api/v1/elections/2021/trend", params={"window_days": 7})
    assert res.status_code == 200
    body = res.json()
    assert (body["scope"], body["sample_count"]) == ("national", 3)
    assert body["points"] == [{"x": 14.0, "y": 5.0}]

    assert client.get("/api/v1/elections/2021/trend", params={"scope": "all"}).json()["sample_count"] == 4
    assert client.get("/api/v1/elections/2021/trend", params={"scope": "district"}).status_code == 422
    assert client.get("/api/v1/elections/2021/trend", params={"window_days": 0}).status_code == 422


def test_audit_endpoint(repo):
    client = TestClient(app)

    body = client.get("/api/v1/elections/2021/audit").json()

    assert body["clusters"] == [{"date": "2021-08-30", "outlet": "nrk", "size": 3, "poll_ids": ["1", "2", "3"]}]
    assert client.get("/api/v1/elections/2021/audit", params={"min_cluster": 4}).json()["clusters"] == []


def test_corrupt_dataset_maps_to_503(repo):
    repo.dataset_path.write_text("{broken", encoding="utf-8")
    client = TestClient(app)

    res = client.get("/api/v1/elections")

    assert res.status_code == 503
    assert res.json() == {"detail": "dataset store unavailable"}


def test_run_scan_requires_bearer_token(repo, monkeypatch: pytest.MonkeyPatch):
    calls: list[dict] = []

    def fake_run_scan(**kwargs):
        calls.append(kwargs)
        return ScanRunResult(summary=ScanRunSummary(run_id="scan_test", mode=kwargs["mode"], status="success"))

    monkeypatch.setattr(routes, "run_scan", fake_run_scan)
    client = TestClient(app)
    payload = {"mode": "feed", "max_scan_length": 5}

    assert client.post("/api/v1/jobs/run-scan", json=payload).status_code == 401
    wrong = client.post("/api/v1/jobs/run-scan", json=payload, headers={"Authorization": "Bearer wrong"})
    assert wrong.status_code == 403

    ok = client.post("/api/v1/jobs/run-scan", json=payload, headers={"Authorization": "Bearer dev-internal-token"})
    assert ok.status_code == 200
    assert ok.json()["run_id"] == "scan_test"
    assert ok.json()["summary"]["mode"] == "feed"
    assert (calls[0]["mode"], calls[0]["start_id"], calls[0]["max_scan_length"]) == ("feed", None, 5)
    report = json.loads((repo.dataset_path.parent / "reports" / "scan_test.json").read_text(encoding="utf-8"))
    assert report["summary"]["status"] == "success"


def test_job_endpoints_unavailable_without_configured_token(repo, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("INTERNAL_JOB_TOKEN")
    get_settings.cache_clear()
    client = TestClient(app)

    res = client.post("/api/v1/jobs/reclassify", json={}, headers={"Authorization": "Bearer anything"})

    assert res.status_code == 503


def test_running_job_returns_conflict(repo):
    client = TestClient(app)
    headers = {"Authorization": "Bearer dev-internal-token"}

    JOB_LOCK.acquire()
    try:
        res = client.post("/api/v1/jobs/reclassify", json={"refetch_weak": False}, headers=headers)
    finally:
        JOB_LOCK.release()

    assert res.status_code == 409


def test_reclassify_job_reports_outcome(repo):
    client = TestClient(app)

    res = client.post(
        "/api/v1/jobs/reclassify",
        json={"refetch_weak": False},
        headers={"Authorization": "Bearer dev-internal-token"},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "success"
    assert (body["summary"]["examined"], body["summary"]["changed"]) == (5, 0)
    assert json.loads(repo.national_export_path.read_text(encoding="utf-8"))["elections"]["2021"]["polls"][0]["id"] == "1"
