from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.dispatch.registry import hash_token
from src.dispatch.types import Region


@pytest.fixture()
def client(store, db_path: str, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setenv("VOXD_SQLITE_PATH", db_path)
    monkeypatch.setenv("VOXD_ENABLE_SWEEPER", "0")
    with TestClient(create_app()) as c:
        yield c


def test_healthz_and_version(client: TestClient) -> None:
    assert client.get("/api/v1/healthz").json() == {"status": "ok"}
    v = client.get("/api/v1/version").json()
    assert v["service"] == "vox-dispatch"
    assert v["api"] == "v1"
    assert set(v["deps"]) == {"fastapi", "uvicorn", "pydantic"}


def test_system_reports_queue_and_disabled_sweepers(client: TestClient, store) -> None:
    store.create_job(test_case_id="tc_na", workflow_id="wf_1", region=Region.NA)
    body = client.get("/api/v1/system").json()
    assert body["sweepers"] == {"enabled": False, "loops": []}
    assert body["jobs_by_status"] == {"pending": 1}
    assert body["workers_by_state"] == {}


def test_trigger_job_and_inspect(client: TestClient) -> None:
    resp = client.post("/api/v1/jobs", json={"test_case_id": "tc_eu"})
    assert resp.status_code == 201
    job = resp.json()["job"]
    assert job["region"] == "eu"
    assert job["status"] == "pending"

    got = client.get(f"/api/v1/jobs/{job['job_id']}")
    assert got.status_code == 200
    assert got.json()["job"] == job

    events = client.get(f"/api/v1/jobs/{job['job_id']}/events").json()
    assert [e["event_type"] for e in events["items"]] == ["job_created"]


def test_trigger_errors(client: TestClient) -> None:
    resp = client.post("/api/v1/jobs", json={"test_case_id": "tc_off"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "test_case_disabled"

    resp = client.post("/api/v1/jobs", json={"test_case_id": "tc_missing"})
    assert resp.status_code == 404

    assert client.get("/api/v1/jobs/job_missing").status_code == 404
    assert client.get("/api/v1/jobs/job_missing/events").status_code == 404


def test_run_workflow(client: TestClient) -> None:
    resp = client.post("/api/v1/workflows/wf_1/run", json={"region": "apac"})
    assert resp.status_code == 201
    assert [j["test_case_id"] for j in resp.json()["jobs"]] == ["tc_apac"]

    resp = client.post("/api/v1/workflows/wf_1/run")
    assert resp.status_code == 201
    assert len(resp.json()["jobs"]) == 3

    assert client.post("/api/v1/workflows/wf_missing/run").status_code == 404


def test_list_jobs_filters_and_paginates(client: TestClient, store) -> None:
    ids = []
    for i in range(5):
        region = Region.NA if i % 2 == 0 else Region.EU
        ids.append(store.create_job(test_case_id=f"tc_{region.value}", workflow_id="wf_1", region=region, now=100.0 + i).job_id)

    page1 = client.get("/api/v1/jobs", params={"limit": 2}).json()
    assert [j["job_id"] for j in page1["items"]] == [ids[4], ids[3]]
    assert page1["has_more"] is True

    page2 = client.get("/api/v1/jobs", params={"limit": 2, "cursor": page1["next_cursor"]}).json()
    assert [j["job_id"] for j in page2["items"]] == [ids[2], ids[1]]

    page3 = client.get("/api/v1/jobs", params={"limit": 2, "cursor": page2["next_cursor"]}).json()
    assert [j["job_id"] for j in page3["items"]] == [ids[0]]
    assert page3["has_more"] is False
    assert page3["next_cursor"] is None

    eu = client.get("/api/v1/jobs", params={"region": "eu"}).json()
    assert [j["job_id"] for j in eu["items"]] == [ids[3], ids[1]]

    running = client.get("/api/v1/jobs", params={"status": "running"}).json()
    assert running["items"] == []

    assert client.get("/api/v1/jobs", params={"workflow_id": "wf_other"}).json()["items"] == []


def test_list_jobs_rejects_bad_arguments(client: TestClient) -> None:
    assert client.get("/api/v1/jobs", params={"cursor": "%%%"}).status_code == 400
    assert client.get("/api/v1/jobs", params={"limit": 201}).status_code == 400
    assert client.get("/api/v1/jobs", params={"limit": 0}).status_code == 400
    resp = client.get("/api/v1/jobs", params={"status": "exploded"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_argument"


def test_worker_tokens_lifecycle(client: TestClient, store) -> None:
    resp = client.post("/api/v1/worker-tokens", json={"name": "apac-pool", "region": "apac"})
    assert resp.status_code == 201
    body = resp.json()
    secret = body["secret"]
    token_id = body["token"]["token_id"]
    assert secret.startswith("vxw_")

    listed = client.get("/api/v1/worker-tokens").json()["items"]
    assert [t["token_id"] for t in listed] == [token_id]
    assert "secret" not in listed[0] and "secret_hash" not in listed[0]
    assert hash_token(secret) not in str(listed)

    reg = client.post("/api/v1/worker/register", json={}, headers={"Authorization": f"Bearer {secret}"})
    assert reg.status_code == 200

    workers = client.get("/api/v1/workers", params={"region": "apac"}).json()["items"]
    assert len(workers) == 1
    assert workers[0]["eligible"] is True
    assert client.get("/api/v1/workers", params={"state": "offline"}).json()["items"] == []

    revoked = client.post(f"/api/v1/worker-tokens/{token_id}/revoke")
    assert revoked.status_code == 200
    assert revoked.json()["token"]["revoked"] is True

    again = client.post("/api/v1/worker/register", json={}, headers={"Authorization": f"Bearer {secret}"})
    assert again.status_code == 401

    assert client.post("/api/v1/worker-tokens/wtk_missing/revoke").status_code == 404


def test_mint_token_validation(client: TestClient) -> None:
    assert client.post("/api/v1/worker-tokens", json={"name": "x", "region": "mars"}).status_code == 400
    assert client.post("/api/v1/worker-tokens", json={"name": "   ", "region": "na"}).status_code == 400
