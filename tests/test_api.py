"""Test the HTTP API with FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from research_vault.api.main import app
from research_vault.executor import WorkerOutput
from research_vault.scheduler.schemas import TaskState
from research_vault.service import ResearchVault, set_vault


@pytest.fixture
def vault(registry, store):
    vault = ResearchVault(registry=registry, store=store, pool_size=2, queue_bound=4)
    set_vault(vault)
    yield vault
    set_vault(None)


@pytest.fixture
def client(vault):
    with TestClient(app) as client:
        yield client


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "Research Vault API"

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["capability_profiles"] == 4
    assert health["pool_capacity"] == 6


def test_document_lifecycle(client):
    created = client.post("/v1/knowledge", json={
        "topic": "react-hooks",
        "tags": ["react", "hooks"],
        "body": "v1",
    })
    assert created.status_code == 200
    doc_id = created.json()["id"]
    assert created.json()["version"] == 1

    updated = client.put(f"/v1/knowledge/{doc_id}", json={
        "topic": "react-hooks",
        "tags": ["react", "hooks"],
        "body": "v2",
        "base_version": 1,
    })
    assert updated.status_code == 200
    assert updated.json()["version"] == 2

    stale = client.put(f"/v1/knowledge/{doc_id}", json={
        "topic": "react-hooks",
        "body": "lost update",
        "base_version": 1,
    })
    assert stale.status_code == 409
    assert stale.json()["detail"]["current_version"] == 2

    revisions = client.get(f"/v1/knowledge/{doc_id}/revisions").json()
    assert [r["version"] for r in revisions] == [1, 2]

    summaries = client.get("/v1/knowledge", params={"tags": "react,hooks"}).json()
    assert [s["id"] for s in summaries] == [doc_id]
    assert "body" not in summaries[0]

    status = client.get("/v1/knowledge/status").json()
    assert status["total_documents"] == 1
    assert status["total_revisions"] == 2


def test_document_errors(client):
    assert client.get("/v1/knowledge/missing").status_code == 404
    assert client.get("/v1/knowledge/missing/revisions").status_code == 404
    assert client.put("/v1/knowledge/missing", json={
        "topic": "t", "body": "b", "base_version": 1,
    }).status_code == 404
    assert client.post("/v1/knowledge", json={
        "topic": "t", "body": "b", "base_version": 3,
    }).status_code == 400


def test_supersedes_cycle_is_409(client, store):
    store.write("a", "t", [], "a", 0)
    store.write("b", "t", [], "b", 0)

    ok = client.post("/v1/knowledge/links", json={"from_id": "a", "to_id": "b", "kind": "supersedes"})
    assert ok.status_code == 200
    cycle = client.post("/v1/knowledge/links", json={"from_id": "b", "to_id": "a", "kind": "supersedes"})
    assert cycle.status_code == 409
    missing = client.post("/v1/knowledge/links", json={"from_id": "a", "to_id": "zz"})
    assert missing.status_code == 404


def test_task_submission_and_polling(client, vault):
    vault.register_worker("react-researcher", _StaticWorker("hooks findings"))

    response = client.post("/v1/tasks", json={"request_text": "Research react hooks best practices"})
    assert response.status_code == 200
    task_id = response.json()["task_id"]

    vault.wait(task_id, timeout=10)
    task = client.get(f"/v1/tasks/{task_id}").json()
    assert task["state"] == TaskState.COMPLETED.value
    assert task["assigned_worker"] == "react-researcher"

    listed = client.get("/v1/tasks", params={"state": "completed"}).json()
    assert [t["id"] for t in listed] == [task_id]

    assert client.post(f"/v1/tasks/{task_id}/cancel").status_code == 409
    assert client.get("/v1/tasks/nope").status_code == 404
    assert client.post("/v1/tasks/nope/cancel").status_code == 404


def test_synthesis_endpoints(client, store):
    store.write("d1", "a", ["react", "hooks"], "- x | hasValue | A\n", 0)
    store.write("d2", "b", ["react", "hooks"], "- x | hasValue | B\n", 0)

    result = client.post("/v1/synthesis/scan").json()
    assert result["clusters_found"] == 1
    job = result["jobs"][0]
    assert job["state"] == "completed"
    assert len(job["contradictions_found"]) == 1

    jobs = client.get("/v1/synthesis/jobs").json()
    assert [j["id"] for j in jobs] == [job["id"]]
    assert client.get(f"/v1/synthesis/jobs/{job['id']}").status_code == 200
    assert client.get("/v1/synthesis/jobs/unknown").status_code == 404


def test_capabilities(client):
    ids = [c["id"] for c in client.get("/v1/capabilities").json()]
    assert ids == sorted(ids)
    assert "react-researcher" in ids

    ranked = [c["id"] for c in client.get("/v1/capabilities", params={"tags": "react,hooks"}).json()]
    assert ranked[0] == "react-researcher"
    assert client.get("/v1/capabilities/ghost").status_code == 404


class _StaticWorker:
    def __init__(self, body):
        self.body = body

    def run(self, task, context):
        return WorkerOutput(body=self.body)
