import pytest
from fastapi.testclient import TestClient

from promptgate.main import app
from promptgate.models.base import get_db
from promptgate.models.dataset import PromptEvalDefault
from promptgate.services.eval import run_service


class _SyncBackedSession:
    """Stands in for AsyncSession; the routes only ever call run_sync."""

    def __init__(self, db):
        self._db = db

    async def run_sync(self, fn, *args, **kwargs):
        return fn(self._db, *args, **kwargs)


@pytest.fixture
def client(db, settings, monkeypatch):
    monkeypatch.setattr(run_service, "get_settings", lambda: settings)
    app.dependency_overrides[get_db] = lambda: _SyncBackedSession(db)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _base(seeded):
    return f"/workspaces/{seeded.prompt.workspace_id}/prompts/{seeded.prompt.id}/eval"


def test_create_get_and_cancel_run(client, seed_prompt):
    seeded = seed_prompt()
    base = _base(seeded)

    created = client.post(
        f"{base}/runs",
        json={"prompt_version_id": seeded.candidate.id, "dataset_id": seeded.dataset.id},
        headers={"X-User-Id": "5"},
    )
    assert created.status_code == 200
    run_id = created.json()["id"]
    assert created.json()["status"] == "QUEUED"

    fetched = client.get(f"{base}/runs/{run_id}")
    assert fetched.json()["totalCases"] == 2
    assert [r["id"] for r in client.get(f"{base}/runs").json()] == [run_id]

    cancelled = client.post(f"{base}/runs/{run_id}:cancel")
    assert cancelled.json() == {"id": run_id, "status": "CANCELLED"}

    cases = client.get(f"{base}/runs/{run_id}/cases", params={"size": 1})
    assert cases.json()["totalPages"] == 2


def test_service_errors_map_to_http_status(client, seed_prompt):
    seeded = seed_prompt()
    base = _base(seeded)

    assert client.get(f"{base}/runs/999").status_code == 404

    compare = client.post(
        f"{base}/runs",
        json={"prompt_version_id": seeded.candidate.id, "dataset_id": seeded.dataset.id, "mode": "COMPARE_ACTIVE"},
    )
    assert compare.status_code == 400


def test_estimate_route(client, seed_prompt):
    seeded = seed_prompt()
    response = client.post(
        f"{_base(seeded)}/runs:estimate",
        json={"prompt_version_id": seeded.candidate.id, "dataset_id": seeded.dataset.id},
    )
    assert response.status_code == 200
    assert response.json()["estimatedCallsMin"] == 5


def test_review_of_queued_case_is_rejected(client, seed_prompt):
    seeded = seed_prompt()
    base = _base(seeded)
    run_id = client.post(
        f"{base}/runs", json={"prompt_version_id": seeded.candidate.id, "dataset_id": seeded.dataset.id}
    ).json()["id"]
    case_id = client.get(f"{base}/runs/{run_id}/cases").json()["content"][0]["id"]

    response = client.put(
        f"{base}/runs/{run_id}/cases/{case_id}/human-review",
        json={"verdict": "CORRECT", "request_id": "r-1"},
    )
    assert response.status_code == 400
    assert client.get(f"{base}/runs/{run_id}/cases:stats").json()["queuedCount"] == 2


def test_release_criteria_routes(client):
    assert client.get("/workspaces/4/eval/release-criteria").json()["minPassRate"] == 90.0

    updated = client.put(
        "/workspaces/4/eval/release-criteria",
        json={"min_pass_rate": 70, "max_error_rate": 5},
        headers={"X-User-Id": "8"},
    )
    assert updated.status_code == 200
    assert updated.json()["minPassRate"] == 70.0
    assert updated.json()["updatedBy"] == 8

    history = client.get("/workspaces/4/eval/release-criteria/history").json()
    assert len(history) == 1
    assert history[0]["maxErrorRate"] == 5.0


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_version_created_hook_queues_default_eval(client, db, seed_prompt):
    seeded = seed_prompt()
    base = _base(seeded)
    body = {"prompt_version_id": seeded.candidate.id}

    assert client.post(f"{base}/versions:created", json=body).json() == {"queued": False, "runId": None}

    db.add(PromptEvalDefault(prompt_id=seeded.prompt.id, dataset_id=seeded.dataset.id, auto_eval_enabled=True))
    db.commit()
    queued = client.post(f"{base}/versions:created", json=body, headers={"X-User-Id": "9"}).json()
    assert queued["queued"] is True
    assert client.get(f"{base}/runs/{queued['runId']}").json()["triggerType"] == "AUTO_VERSION_CREATE"
